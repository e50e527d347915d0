"""Payment repository - Database operations for payments"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...models import Appointment
from ...models_payment import Payment, PaymentMethod, PaymentStatus


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def get_payment(db: Session, payment_id: int) -> Optional[Payment]:
        """Get payment by ID"""
        return db.query(Payment).filter(Payment.id == payment_id).first()

    @staticmethod
    def get_by_appointment(db: Session, appointment_id: int) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.appointment_id == appointment_id)
            .order_by(Payment.id.desc())
            .first()
        )

    @staticmethod
    def add_payment(db: Session, **data) -> Payment:
        """Stage a payment row; the caller owns the commit"""
        payment = Payment(**data)
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def save(db: Session, payment: Payment) -> Payment:
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def settle_offline(
        db: Session, payment_id: int, transaction_id: str, paid_at: datetime
    ) -> bool:
        """pending → completed for a payment taken at the hospital desk"""
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
                Payment.method.in_(PaymentMethod.OFFLINE),
            )
            .values(
                status=PaymentStatus.COMPLETED,
                transaction_id=transaction_id,
                gateway_status="settled_at_hospital",
                paid_at=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def clear_appointment_review(db: Session, appointment_id: int) -> None:
        """Drop the refund review flag once the appointment's refund went through"""
        db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.refund_review_required.is_(True),
            )
            .values(refund_review_required=False)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def get_refund_reviews(db: Session) -> list[Payment]:
        """Payments whose refund failed and still await manual reconciliation"""
        return (
            db.query(Payment)
            .filter(Payment.refund_status == "failed", Payment.status != PaymentStatus.REFUNDED)
            .order_by(Payment.refund_attempted_at)
            .all()
        )

    @staticmethod
    def totals_by_status(
        db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[tuple]:
        query = db.query(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        if start:
            query = query.filter(Payment.created_at >= start)
        if end:
            query = query.filter(Payment.created_at <= end)
        return query.group_by(Payment.status).all()

    @staticmethod
    def revenue_by_method(
        db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[tuple]:
        query = db.query(
            Payment.method, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)
        ).filter(Payment.status == PaymentStatus.COMPLETED)
        if start:
            query = query.filter(Payment.created_at >= start)
        if end:
            query = query.filter(Payment.created_at <= end)
        return query.group_by(Payment.method).all()

    @staticmethod
    def total_refunded(
        db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> float:
        query = db.query(func.coalesce(func.sum(Payment.refund_amount), 0)).filter(
            Payment.status == PaymentStatus.REFUNDED
        )
        if start:
            query = query.filter(Payment.created_at >= start)
        if end:
            query = query.filter(Payment.created_at <= end)
        return float(query.scalar() or 0)
