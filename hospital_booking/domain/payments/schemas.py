"""Payment domain schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...models_payment import PaymentMethod
from ...shared.validators import mask_payment_data


class CardDetails(BaseModel):
    card_number: str
    expiry_month: int
    expiry_year: int
    cvv: str
    cardholder_name: Optional[str] = None


class WalletDetails(BaseModel):
    wallet_type: str  # paypal, apple_pay, google_pay
    wallet_id: str


class InsuranceDetails(BaseModel):
    provider_name: str
    policy_number: str
    group_number: Optional[str] = None


class PaymentData(BaseModel):
    """Payment instrument supplied with a booking.

    Only shapes are checked here. Business rules (Luhn, expiry, limits) live in
    PaymentService.validate so they surface as ValidationError envelopes with
    the failing step attached.
    """

    amount: Optional[float] = None  # defaults to the appointment fee
    currency: Optional[str] = None
    method: str
    card_details: Optional[CardDetails] = None
    wallet_details: Optional[WalletDetails] = None
    insurance_details: Optional[InsuranceDetails] = None

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v

    def masked(self) -> dict:
        """Representation safe for logs"""
        return mask_payment_data(self.model_dump())

    @property
    def is_offline(self) -> bool:
        return self.method in PaymentMethod.OFFLINE


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: str = "Refund requested"

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = (v or "").strip()
        if not v or len(v) > 500:
            raise ValueError("Reason must be between 1 and 500 characters")
        return v


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: Optional[int] = None
    patient_id: int
    practitioner_id: Optional[int] = None
    amount: float
    currency: str
    method: str
    status: str
    transaction_id: Optional[str] = None
    card_last4: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    refund_status: Optional[str] = None
    refund_error: Optional[str] = None
    refunded_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
