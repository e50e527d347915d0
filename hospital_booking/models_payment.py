"""
Payment Models for appointment fees and refunds
"""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    ALL = (PENDING, COMPLETED, FAILED, REFUNDED)


class PaymentMethod:
    CARD = "card"
    DIGITAL_WALLET = "digital_wallet"
    INSURANCE = "insurance"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"

    ALL = (CARD, DIGITAL_WALLET, INSURANCE, CASH, BANK_TRANSFER)
    # Settled at the hospital desk, the gateway is never called for these
    OFFLINE = (CASH, BANK_TRANSFER)


class Payment(Base):
    """A record of funds movement tied to one appointment"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    practitioner_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    method = Column(String(20), nullable=False)

    # pending → completed → refunded, or failed. refunded is immutable.
    status = Column(String(20), default=PaymentStatus.PENDING, nullable=False, index=True)

    # Gateway details
    transaction_id = Column(String(255), unique=True, nullable=True, index=True)
    gateway_status = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    insurance_provider = Column(String(255), nullable=True)
    insurance_policy_number = Column(String(100), nullable=True)

    # Refund tracking
    refund_amount = Column(Float, nullable=True)
    refund_reason = Column(String(500), nullable=True)
    refund_transaction_id = Column(String(255), nullable=True)
    refund_status = Column(String(20), nullable=True)  # completed, failed
    refund_error = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_attempted_at = Column(DateTime, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
