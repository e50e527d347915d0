"""Tests for the background audit sink"""

import threading

import pytest

from hospital_booking.models_audit import AuditAction, AuditLog, AuditStatus
from hospital_booking.services.audit_sink import AuditEvent, AuditSink, make_db_writer, snapshot


def event(**fields) -> AuditEvent:
    return AuditEvent(
        **{
            "actor_id": 1,
            "actor_role": "patient",
            "action": AuditAction.CREATE_APPOINTMENT,
            "resource_type": "appointment",
            "resource_id": 7,
            **fields,
        }
    )


@pytest.fixture
def sink():
    written = []
    sink = AuditSink(writer=written.append, max_queue_size=10)
    sink.written = written
    yield sink
    sink.stop()


def test_events_are_written_in_background(sink):
    assert sink.record(event())
    assert sink.record(event(action=AuditAction.CANCEL_APPOINTMENT))
    sink.flush()

    assert [e.action for e in sink.written] == [
        AuditAction.CREATE_APPOINTMENT,
        AuditAction.CANCEL_APPOINTMENT,
    ]
    assert sink.written[0].resource_id == "7"


def test_full_queue_drops_instead_of_blocking():
    release = threading.Event()
    written = []

    def slow_writer(e):
        release.wait(timeout=5)
        written.append(e)

    sink = AuditSink(writer=slow_writer, max_queue_size=1)
    try:
        results = [sink.record(event(resource_id=i)) for i in range(5)]

        assert results.count(False) == sink.dropped
        assert sink.dropped >= 3
    finally:
        release.set()
        sink.flush()
        sink.stop()

    assert len(written) == 5 - sink.dropped


def test_writer_failure_does_not_stop_the_worker():
    written = []

    def flaky_writer(e):
        if e.resource_id == "1":
            raise RuntimeError("audit store down")
        written.append(e)

    sink = AuditSink(writer=flaky_writer)
    try:
        sink.record(event(resource_id=1))
        sink.record(event(resource_id=2))
        sink.flush()
    finally:
        sink.stop()

    assert [e.resource_id for e in written] == ["2"]


def test_disabled_sink_records_nothing():
    written = []
    sink = AuditSink(writer=written.append, enabled=False)

    assert sink.record(event()) is False
    assert written == []
    assert sink.dropped == 0


def test_unknown_action_rejected():
    with pytest.raises(ValueError):
        event(action="DELETE_EVERYTHING")


def test_db_writer_persists_row(session_factory, db):
    write = make_db_writer(session_factory)

    write(
        event(
            status=AuditStatus.FAILURE,
            error_message="Slot is no longer available",
            metadata={"slot_id": 3},
            before={"status": "scheduled"},
        )
    )

    row = db.query(AuditLog).one()
    assert row.action == AuditAction.CREATE_APPOINTMENT
    assert row.resource_id == "7"
    assert row.status == AuditStatus.FAILURE
    assert row.extra == {"slot_id": 3}
    assert row.before == {"status": "scheduled"}


def test_snapshot_is_json_safe(make_slot):
    slot = make_slot()

    data = snapshot(slot, ("date", "start_time", "status"))

    assert data == {"date": "2030-01-08", "start_time": "11:00", "status": "AVAILABLE"}
