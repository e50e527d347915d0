"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ...shared.validators import to_local_naive
from ..payments.schemas import PaymentData, PaymentResponse

PRIORITIES = ("low", "normal", "high", "urgent")


class AppointmentCreate(BaseModel):
    """Booking request. patient_id is implied when a patient books for themselves."""

    patient_id: Optional[int] = None
    practitioner_id: int
    slot_id: int
    scheduled_at: Optional[datetime] = None  # defaults to the slot start
    duration: Optional[int] = None  # defaults to the slot duration
    reason_for_visit: str
    department: str
    appointment_type: str = "consultation"
    priority: str = "normal"
    payment: PaymentData

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        v = (v or "normal").lower()
        if v not in PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")
        return v

    @field_validator("department")
    @classmethod
    def validate_department(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("department is required")
        return v


class RescheduleRequest(BaseModel):
    new_slot_id: int
    scheduled_at: Optional[datetime] = None
    reason: Optional[str] = None

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)


class CancelRequest(BaseModel):
    reason: str


class HospitalPaymentRequest(BaseModel):
    transaction_id: Optional[str] = None  # receipt number, generated when absent


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    public_id: str
    reference: Optional[str] = None
    patient_id: int
    practitioner_id: int
    slot_id: int
    payment_id: Optional[int] = None
    scheduled_at: datetime
    duration: int
    reason_for_visit: str
    department: str
    appointment_type: str
    priority: str
    fee: float
    currency: str
    status: str
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_review_required: bool = False
    rescheduled_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BookingResponse(BaseModel):
    appointment: AppointmentResponse
    payment: Optional[PaymentResponse] = None


class FeeQuote(BaseModel):
    duration: int
    specialty: str
    fee: float
    currency: str
