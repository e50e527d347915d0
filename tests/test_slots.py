"""Tests for the slot store"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hospital_booking.database import Base
from hospital_booking.domain.slots.repository import SlotRepository
from hospital_booking.domain.slots.schemas import (
    QuickBlockRequest,
    RecurringPattern,
    RecurringSlotCreate,
    SlotCreate,
)
from hospital_booking.domain.slots.service import expand_recurrence
from hospital_booking.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from hospital_booking.models import Slot, SlotStatus, SlotType, User
from hospital_booking.models_audit import AuditAction, AuditStatus

from .conftest import NOW, TOMORROW


class TestCreateSlot:
    def test_creates_slot_with_derived_duration(self, slot_service, doctor, audit):
        slot = slot_service.create_slot(
            doctor.id, SlotCreate(date=TOMORROW, start_time="9:00", end_time="09:45")
        )

        assert slot.start_time == "09:00"
        assert slot.duration == 45
        assert slot.status == SlotStatus.AVAILABLE
        assert slot.current_bookings == 0
        assert slot.department == "cardiology"
        assert audit.actions() == [AuditAction.CREATE_SLOTS]

    def test_rejects_overlap(self, slot_service, doctor, make_slot, audit):
        make_slot(start_time="10:00", end_time="11:00")

        with pytest.raises(ConflictError) as exc_info:
            slot_service.create_slot(
                doctor.id, SlotCreate(date=TOMORROW, start_time="10:30", end_time="11:30")
            )

        assert exc_info.value.details[0]["start_time"] == "10:00"
        assert audit.events[-1].status == AuditStatus.FAILURE

    def test_blocked_slots_still_conflict(self, slot_service, doctor, make_slot):
        make_slot(start_time="10:00", end_time="11:00", status=SlotStatus.BLOCKED)

        with pytest.raises(ConflictError):
            slot_service.create_slot(
                doctor.id, SlotCreate(date=TOMORROW, start_time="10:00", end_time="11:00")
            )

    def test_adjacent_slots_do_not_conflict(self, slot_service, doctor, make_slot):
        make_slot(start_time="10:00", end_time="11:00")

        slot = slot_service.create_slot(
            doctor.id, SlotCreate(date=TOMORROW, start_time="11:00", end_time="11:30")
        )
        assert slot.id

    def test_rejects_past_slots(self, slot_service, doctor):
        with pytest.raises(ValidationError, match="past"):
            slot_service.create_slot(
                doctor.id, SlotCreate(date=NOW.date(), start_time="09:00", end_time="09:30")
            )

    def test_rejects_inverted_window(self, slot_service, doctor):
        with pytest.raises(ValidationError, match="after start"):
            slot_service.create_slot(
                doctor.id, SlotCreate(date=TOMORROW, start_time="10:00", end_time="09:00")
            )

    def test_rejects_duration_outside_bounds(self, slot_service, doctor):
        with pytest.raises(ValidationError):
            slot_service.create_slot(
                doctor.id,
                SlotCreate(date=TOMORROW, start_time="10:00", end_time="10:30", duration=3),
            )
        with pytest.raises(ValidationError):
            slot_service.create_slot(
                doctor.id,
                SlotCreate(date=TOMORROW, start_time="10:00", end_time="10:30", duration=45),
            )

    def test_rejects_non_practitioner(self, slot_service, patient):
        with pytest.raises(ValidationError):
            slot_service.create_slot(
                patient.id, SlotCreate(date=TOMORROW, start_time="10:00", end_time="10:30")
            )

    def test_rejects_unknown_practitioner(self, slot_service):
        with pytest.raises(NotFoundError):
            slot_service.create_slot(
                999, SlotCreate(date=TOMORROW, start_time="10:00", end_time="10:30")
            )


class TestRecurrence:
    def test_daily_with_interval(self):
        pattern = RecurringPattern(frequency="daily", interval=2, occurrences=3)
        assert expand_recurrence(date(2030, 1, 7), pattern) == [
            date(2030, 1, 7),
            date(2030, 1, 9),
            date(2030, 1, 11),
        ]

    def test_weekly_on_selected_days(self):
        pattern = RecurringPattern(
            frequency="WEEKLY", days_of_week=[0, 2], end_date=date(2030, 1, 20)
        )
        assert expand_recurrence(date(2030, 1, 7), pattern) == [
            date(2030, 1, 7),
            date(2030, 1, 9),
            date(2030, 1, 14),
            date(2030, 1, 16),
        ]

    def test_weekly_every_other_week(self):
        pattern = RecurringPattern(frequency="WEEKLY", interval=2, occurrences=3)
        assert expand_recurrence(date(2030, 1, 8), pattern) == [
            date(2030, 1, 8),
            date(2030, 1, 22),
            date(2030, 2, 5),
        ]

    def test_monthly_skips_short_months(self):
        pattern = RecurringPattern(frequency="MONTHLY", occurrences=3)
        assert expand_recurrence(date(2030, 1, 31), pattern) == [
            date(2030, 1, 31),
            date(2030, 3, 31),
            date(2030, 5, 31),
        ]

    def test_exceptions_are_skipped(self):
        pattern = RecurringPattern(
            frequency="DAILY", occurrences=3, exceptions=[date(2030, 1, 8)]
        )
        assert expand_recurrence(date(2030, 1, 7), pattern) == [date(2030, 1, 7), date(2030, 1, 9)]

    def test_pattern_requires_a_bound(self):
        with pytest.raises(ValueError):
            RecurringPattern(frequency="DAILY")

    def test_creation_reports_failures_per_date(self, slot_service, doctor, make_slot):
        # Wednesday already has an overlapping slot
        make_slot(slot_date=date(2030, 1, 9), start_time="09:00", end_time="10:00")

        result = slot_service.create_recurring_slots(
            doctor.id,
            RecurringSlotCreate(
                date=TOMORROW,
                start_time="09:00",
                end_time="09:30",
                recurring_pattern=RecurringPattern(frequency="DAILY", occurrences=3),
            ),
        )

        assert [s.date for s in result["created"]] == [date(2030, 1, 8), date(2030, 1, 10)]
        assert result["failed"] == [
            {"date": "2030-01-09", "reason": "Slot overlaps existing slots"}
        ]
        assert all(s.is_recurring for s in result["created"])
        assert all(s.slot_type == SlotType.RECURRING for s in result["created"])
        assert len({s.recurrence_group for s in result["created"]}) == 1


class TestReservation:
    def test_reserve_and_release_single_capacity(self, slot_service, make_slot):
        slot = make_slot()

        reserved = slot_service.reserve(slot.id)
        assert reserved.status == SlotStatus.BOOKED
        assert reserved.current_bookings == 1

        with pytest.raises(ConflictError):
            slot_service.reserve(slot.id)

        assert slot_service.release(slot.id) is True
        released = slot_service.get_slot(slot.id)
        assert released.status == SlotStatus.AVAILABLE
        assert released.current_bookings == 0

    def test_release_of_unbooked_slot_is_noop(self, slot_service, make_slot):
        slot = make_slot()
        assert slot_service.release(slot.id) is False
        assert slot_service.get_slot(slot.id).current_bookings == 0

    def test_multi_capacity_stays_booked_until_empty(self, slot_service, make_slot):
        slot = make_slot(max_patients=2)

        slot_service.reserve(slot.id)
        second = slot_service.reserve(slot.id)
        assert second.current_bookings == 2
        with pytest.raises(ConflictError):
            slot_service.reserve(slot.id)

        slot_service.release(slot.id)
        partially = slot_service.get_slot(slot.id)
        assert partially.status == SlotStatus.BOOKED
        assert partially.current_bookings == 1

        slot_service.release(slot.id)
        assert slot_service.get_slot(slot.id).status == SlotStatus.AVAILABLE

    def test_blocked_slot_cannot_be_reserved(self, slot_service, make_slot):
        slot = make_slot(status=SlotStatus.BLOCKED)
        with pytest.raises(ConflictError):
            slot_service.reserve(slot.id)

    def test_missing_slot(self, slot_service):
        with pytest.raises(NotFoundError):
            slot_service.reserve(404)

    @pytest.mark.parametrize("capacity", [1, 3])
    def test_concurrent_reservations_never_exceed_capacity(self, tmp_path, capacity):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine, autoflush=False)

        setup = Session()
        doctor = User(role="doctor", first_name="Race", last_name="Doctor")
        setup.add(doctor)
        setup.commit()
        slot = Slot(
            practitioner_id=doctor.id,
            date=TOMORROW,
            start_time="11:00",
            end_time="11:30",
            duration=30,
            max_patients=capacity,
        )
        setup.add(slot)
        setup.commit()
        slot_id = slot.id
        setup.close()

        attempts = 10
        barrier = threading.Barrier(attempts)

        def attempt() -> bool:
            session = Session()
            try:
                barrier.wait()
                return SlotRepository.reserve(session, slot_id)
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            results = list(pool.map(lambda _: attempt(), range(attempts)))

        check = Session()
        final = check.get(Slot, slot_id)
        assert results.count(True) == capacity
        assert results.count(False) == attempts - capacity
        assert final.current_bookings == capacity
        assert final.status == SlotStatus.BOOKED
        check.close()
        engine.dispose()


class TestBlocking:
    def test_block_and_unblock_own_slot(self, slot_service, doctor, make_slot, audit):
        slot = make_slot()

        blocked = slot_service.block_slot(slot.id, doctor, "MEETING", "Department meeting")
        assert blocked.status == SlotStatus.BLOCKED
        assert blocked.block_reason == "MEETING"
        assert blocked.blocked_by == doctor.id
        assert blocked.blocked_at == NOW

        unblocked = slot_service.unblock_slot(slot.id, doctor)
        assert unblocked.status == SlotStatus.AVAILABLE
        assert unblocked.block_reason is None
        assert audit.actions() == [AuditAction.BLOCK_SLOTS, AuditAction.UNBLOCK_SLOTS]
        assert audit.events[0].before["status"] == SlotStatus.AVAILABLE
        assert audit.events[0].after["status"] == SlotStatus.BLOCKED

    def test_cannot_block_someone_elses_slot(self, slot_service, other_doctor, make_slot):
        slot = make_slot()
        with pytest.raises(AuthorizationError):
            slot_service.block_slot(slot.id, other_doctor, "MEETING")
        with pytest.raises(AuthorizationError):
            slot_service.unblock_slot(slot.id, other_doctor)

    def test_cannot_block_booked_slot(self, slot_service, doctor, make_slot):
        slot = make_slot(max_patients=2)
        slot_service.reserve(slot.id)

        with pytest.raises(ConflictError):
            slot_service.block_slot(slot.id, doctor, "MEETING")
        assert slot_service.get_slot(slot.id).status == SlotStatus.BOOKED

    def test_unblock_requires_blocked_status(self, slot_service, doctor, make_slot):
        slot = make_slot()
        with pytest.raises(ConflictError):
            slot_service.unblock_slot(slot.id, doctor)

    def test_batch_block_reports_each_failure(self, slot_service, doctor, other_doctor, make_slot):
        mine = make_slot(start_time="09:00", end_time="09:30")
        booked = make_slot(start_time="10:00", end_time="10:30")
        theirs = make_slot(start_time="09:00", end_time="09:30", practitioner=other_doctor)
        slot_service.reserve(booked.id)

        result = slot_service.block_slots([mine.id, booked.id, theirs.id, 999], doctor, "VACATION")

        assert [s.id for s in result["blocked"]] == [mine.id]
        assert [(e["slot_id"], e["error"]) for e in result["errors"]] == [
            (booked.id, "ConflictError"),
            (theirs.id, "AuthorizationError"),
            (999, "NotFoundError"),
        ]

    def test_quick_block_blocks_open_overlapping_slots(self, slot_service, doctor, make_slot):
        first = make_slot(start_time="09:00", end_time="09:30")
        second = make_slot(start_time="09:30", end_time="10:00")
        outside = make_slot(start_time="12:00", end_time="12:30")

        result = slot_service.quick_block(
            doctor,
            QuickBlockRequest(date=TOMORROW, start_time="09:15", end_time="10:00", reason="surgery"),
        )

        assert {s.id for s in result["blocked"]} == {first.id, second.id}
        assert slot_service.get_slot(outside.id).status == SlotStatus.AVAILABLE


class TestQueries:
    def test_available_slots_exclude_full_blocked_and_started(
        self, slot_service, doctor, make_slot, clock
    ):
        today = NOW.date()
        started = make_slot(slot_date=today, start_time="09:00", end_time="09:30")
        open_slot = make_slot(slot_date=today, start_time="14:00", end_time="14:30")
        make_slot(slot_date=today, start_time="15:00", end_time="15:30", status=SlotStatus.BLOCKED)
        full = make_slot(slot_date=today, start_time="16:00", end_time="16:30")
        slot_service.reserve(full.id)

        available = slot_service.get_available_slots(doctor.id, today)

        assert [s.id for s in available] == [open_slot.id]
        assert started.id not in [s.id for s in available]
        assert available[0].available_spots == 1

    def test_doctor_availability_summary(self, slot_service, doctor, make_slot, audit):
        make_slot(start_time="09:00", end_time="09:30")
        make_slot(start_time="10:00", end_time="10:30", status=SlotStatus.BLOCKED)
        make_slot(slot_date=date(2030, 1, 9), start_time="09:00", end_time="09:30")

        result = slot_service.get_doctor_availability(
            doctor.id, TOMORROW, date(2030, 1, 9), actor=doctor
        )

        assert result["summary"]["total"] == 3
        assert result["summary"]["by_status"] == {"AVAILABLE": 2, "BLOCKED": 1}
        assert result["summary"]["by_date"] == {"2030-01-08": 2, "2030-01-09": 1}
        assert audit.actions() == [AuditAction.VIEW_SCHEDULE]

    def test_availability_rejects_inverted_range(self, slot_service, doctor):
        with pytest.raises(ValidationError):
            slot_service.get_doctor_availability(doctor.id, date(2030, 1, 9), TOMORROW)

    def test_today_schedule(self, slot_service, doctor, make_slot):
        make_slot(slot_date=NOW.date(), start_time="14:00", end_time="14:30")
        make_slot(start_time="09:00", end_time="09:30")

        schedule = slot_service.get_today_schedule(doctor)

        assert schedule["date"] == NOW.date()
        assert len(schedule["slots"]) == 1
        assert schedule["summary"]["by_status"] == {"AVAILABLE": 1}

    def test_mark_completed_only_from_booked(self, slot_service, make_slot):
        slot = make_slot()
        assert slot_service.mark_completed(slot.id) is False

        slot_service.reserve(slot.id)
        assert slot_service.mark_completed(slot.id) is True
        assert slot_service.get_slot(slot.id).status == SlotStatus.COMPLETED

    def test_conflict_check_normalizes_times(self, slot_service, doctor, make_slot):
        existing = make_slot(start_time="09:00", end_time="10:00")
        conflicts = slot_service.get_conflicts(doctor.id, TOMORROW, "9:30", "10:30")
        assert [s.id for s in conflicts] == [existing.id]
