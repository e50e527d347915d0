"""
Shared pytest fixtures for all tests.

Provides an in-memory database, a frozen clock, a recording audit sink, a
scripted payment gateway behind httpx.MockTransport and ready-made services.
"""

import os
from datetime import date, datetime, timedelta

# Configure the app before it is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["AUDIT_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ.setdefault("PAYMENT_GATEWAY_API_KEY", "test-key")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hospital_booking import models_audit, models_payment  # noqa: F401
from hospital_booking.database import Base
from hospital_booking.domain.appointments.service import AppointmentService
from hospital_booking.domain.payments.service import PaymentService, is_gateway_retryable
from hospital_booking.domain.slots.service import SlotService
from hospital_booking.models import Slot, SlotStatus, User
from hospital_booking.services.payment_gateway import PaymentGatewayClient
from hospital_booking.shared.retry import RetryPolicy

# Monday morning. Tuesday 11:00 is 25 hours away.
NOW = datetime(2030, 1, 7, 10, 0)
TOMORROW = date(2030, 1, 8)

VALID_CARD = {
    "card_number": "4111 1111 1111 1111",
    "expiry_month": 12,
    "expiry_year": 2032,
    "cvv": "123",
    "cardholder_name": "Pat Patient",
}


# ============================================================================
# TEST DOUBLES
# ============================================================================


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, current: datetime = NOW):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class RecordingAudit:
    """Stands in for the audit sink and keeps every event"""

    def __init__(self):
        self.events = []

    def record(self, event) -> bool:
        self.events.append(event)
        return True

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class GatewayStub:
    """
    Scripted remote gateway.

    Queue outcomes with `charge_outcomes` / `refund_outcomes`: an int status
    code, a dict body (HTTP 200), an httpx.Response or an exception to raise.
    Empty queues answer with success.
    """

    def __init__(self):
        self.charge_outcomes = []
        self.refund_outcomes = []
        self.requests: list[httpx.Request] = []
        self._counter = 0

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def _respond(self, outcome, request: httpx.Request) -> httpx.Response:
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        if isinstance(outcome, int):
            return httpx.Response(outcome, json={"success": False, "error": "gateway error"})
        return httpx.Response(200, json=outcome)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self._counter += 1

        if request.url.path.endswith("/charges"):
            if self.charge_outcomes:
                return self._respond(self.charge_outcomes.pop(0), request)
            return httpx.Response(
                200,
                json={"success": True, "transactionId": f"txn_{self._counter}", "status": "captured"},
            )

        if request.url.path.endswith("/refunds"):
            if self.refund_outcomes:
                return self._respond(self.refund_outcomes.pop(0), request)
            return httpx.Response(200, json={"success": True, "refundId": f"rf_{self._counter}"})

        return httpx.Response(404, json={"success": False, "error": "not found"})


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# USERS AND SLOTS
# ============================================================================


def _user(db, **fields) -> User:
    user = User(**fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db):
    return _user(db, email="pat@example.com", first_name="Pat", last_name="Patient", role="patient")


@pytest.fixture
def other_patient(db):
    return _user(db, email="sam@example.com", first_name="Sam", last_name="Other", role="patient")


@pytest.fixture
def doctor(db):
    return _user(
        db,
        email="dr.heart@example.com",
        first_name="Ada",
        last_name="Heart",
        role="doctor",
        specialty="cardiology",
    )


@pytest.fixture
def other_doctor(db):
    return _user(
        db,
        email="dr.gp@example.com",
        first_name="Gil",
        last_name="General",
        role="doctor",
        specialty="general",
    )


@pytest.fixture
def staff(db):
    return _user(db, email="desk@example.com", first_name="Desk", last_name="Staff", role="staff")


@pytest.fixture
def make_slot(db, doctor):
    """Insert a slot directly, bypassing creation rules"""

    def factory(
        slot_date: date = TOMORROW,
        start_time: str = "11:00",
        end_time: str = "11:30",
        practitioner: User = None,
        **fields,
    ) -> Slot:
        practitioner = practitioner or doctor
        start_h, start_m = map(int, start_time.split(":"))
        end_h, end_m = map(int, end_time.split(":"))
        slot = Slot(
            practitioner_id=practitioner.id,
            date=slot_date,
            start_time=start_time,
            end_time=end_time,
            duration=(end_h * 60 + end_m) - (start_h * 60 + start_m),
            max_patients=fields.pop("max_patients", 1),
            current_bookings=fields.pop("current_bookings", 0),
            status=fields.pop("status", SlotStatus.AVAILABLE),
            **fields,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return factory


# ============================================================================
# SERVICES
# ============================================================================


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    return PaymentGatewayClient(
        base_url="http://gateway.test/v1",
        api_key="test-key",
        timeout=5,
        transport=httpx.MockTransport(gateway_stub.handler),
    )


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(
        max_attempts=3, base_delay=1.0, is_retryable=is_gateway_retryable, sleep=sleeps
    )


@pytest.fixture
def slot_service(db, audit, clock):
    return SlotService(db, audit=audit, clock=clock)


@pytest.fixture
def payment_service(db, gateway, retry_policy, audit, clock):
    return PaymentService(db, gateway=gateway, retry_policy=retry_policy, audit=audit, clock=clock)


@pytest.fixture
def appointment_service(db, slot_service, payment_service, audit, clock):
    return AppointmentService(
        db,
        slot_service=slot_service,
        payment_service=payment_service,
        audit=audit,
        clock=clock,
    )
