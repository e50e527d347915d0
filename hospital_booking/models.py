import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class SlotStatus:
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"

    ALL = (AVAILABLE, BOOKED, BLOCKED, COMPLETED)
    # States a new reservation may land on, capacity permitting
    RESERVABLE = (AVAILABLE, BOOKED)


class SlotType:
    REGULAR = "REGULAR"
    EMERGENCY = "EMERGENCY"
    CONSULTATION = "CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    RECURRING = "RECURRING"

    ALL = (REGULAR, EMERGENCY, CONSULTATION, FOLLOW_UP, RECURRING)


BLOCK_REASONS = (
    "PERSONAL_TIME",
    "MEETING",
    "SURGERY",
    "EMERGENCY",
    "TRAINING",
    "VACATION",
    "SICK_LEAVE",
    "ADMINISTRATIVE",
    "OTHER",
)


class AppointmentStatus:
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (SCHEDULED, CONFIRMED, COMPLETED, CANCELLED)
    ACTIVE = (SCHEDULED, CONFIRMED)


# Valid source states for each target state
APPOINTMENT_TRANSITIONS = {
    AppointmentStatus.CONFIRMED: (AppointmentStatus.SCHEDULED,),
    AppointmentStatus.COMPLETED: (AppointmentStatus.CONFIRMED,),
    AppointmentStatus.CANCELLED: (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED),
}


class User(Base):
    """Identity record. Owned by the identity subsystem; read-only here."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, index=True)  # patient, doctor, staff, manager, admin
    specialty = Column(String(100), nullable=True)  # doctors only, matched against department
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Slot(Base):
    """A bookable time window owned by a practitioner"""

    __tablename__ = "doctor_slots"
    __table_args__ = (
        UniqueConstraint(
            "practitioner_id", "date", "start_time", "end_time", name="uq_slot_window"
        ),
        Index("ix_slot_practitioner_date", "practitioner_id", "date"),
        Index("ix_slot_status_date", "status", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )
    practitioner_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Scheduling
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM, zero padded
    end_time = Column(String(5), nullable=False)
    duration = Column(Integer, nullable=False)  # minutes

    # Capacity
    max_patients = Column(Integer, default=1, nullable=False)
    current_bookings = Column(Integer, default=0, nullable=False)

    # AVAILABLE → BOOKED → COMPLETED, BLOCKED is a manual override
    status = Column(String(20), default=SlotStatus.AVAILABLE, nullable=False)
    slot_type = Column(String(20), default=SlotType.REGULAR, nullable=False)

    # Blocking metadata
    block_reason = Column(String(30), nullable=True)
    block_description = Column(String(200), nullable=True)
    blocked_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    blocked_at = Column(DateTime, nullable=True)

    # Recurrence
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_group = Column(String(36), nullable=True, index=True)

    instructions = Column(String(300), nullable=True)
    room = Column(String(50), nullable=True)
    building = Column(String(100), nullable=True)
    floor = Column(String(20), nullable=True)
    department = Column(String(100), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    practitioner = relationship("User", foreign_keys=[practitioner_id])
    appointments = relationship("Appointment", back_populates="slot")

    @property
    def available_spots(self) -> int:
        return max(0, (self.max_patients or 0) - (self.current_bookings or 0))


class Appointment(Base):
    """A confirmed reservation linking a patient, a practitioner and a slot"""

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointment_patient_date", "patient_id", "scheduled_at"),
        Index("ix_appointment_practitioner_date", "practitioner_id", "scheduled_at"),
        Index("ix_appointment_slot_status", "slot_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )
    reference = Column(String(32), unique=True, nullable=True, index=True)

    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    practitioner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_id = Column(Integer, ForeignKey("doctor_slots.id"), nullable=False)
    # No FK, payments.appointment_id already points back here
    payment_id = Column(Integer, nullable=True, index=True)

    scheduled_at = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=False, default=30)  # minutes
    reason_for_visit = Column(Text, nullable=False)
    department = Column(String(100), nullable=False)
    appointment_type = Column(String(30), default="consultation", nullable=False)
    priority = Column(String(10), default="normal", nullable=False)  # low, normal, high, urgent

    fee = Column(Float, nullable=False, default=0)
    currency = Column(String(3), default="USD", nullable=False)

    # scheduled → confirmed → completed, cancelled from scheduled/confirmed
    status = Column(String(20), default=AppointmentStatus.SCHEDULED, nullable=False)

    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    # Set when a cancellation refund failed and needs manual reconciliation
    refund_review_required = Column(Boolean, default=False, nullable=False)

    rescheduled_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    slot = relationship("Slot", back_populates="appointments")
    patient = relationship("User", foreign_keys=[patient_id])
    practitioner = relationship("User", foreign_keys=[practitioner_id])
