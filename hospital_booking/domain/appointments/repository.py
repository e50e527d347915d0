"""Appointment repository - Database operations for appointments

Status changes are conditional UPDATEs on the current status so two
requests racing on the same appointment cannot both win.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...models import Appointment, AppointmentStatus


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        """Get appointment by ID"""
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def add_appointment(db: Session, **data) -> Appointment:
        """Stage an appointment and assign its id; the caller owns the commit"""
        appointment = Appointment(**data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def has_active_on_slot(db: Session, patient_id: int, slot_id: int) -> bool:
        return (
            db.query(Appointment.id)
            .filter(
                Appointment.patient_id == patient_id,
                Appointment.slot_id == slot_id,
                Appointment.status.in_(AppointmentStatus.ACTIVE),
            )
            .first()
            is not None
        )

    @staticmethod
    def transition(
        db: Session, appointment_id: int, from_statuses: tuple, to_status: str, **values
    ) -> bool:
        """Move to `to_status` only if the current status is one of `from_statuses`"""
        result = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.status.in_(from_statuses))
            .values(status=to_status, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def move_to_slot(
        db: Session,
        appointment_id: int,
        old_slot_id: int,
        new_slot_id: int,
        scheduled_at: datetime,
        duration: int,
        rescheduled_at: datetime,
    ) -> bool:
        """Re-point an appointment that is still active and still on the old slot"""
        result = db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.slot_id == old_slot_id,
                Appointment.status.in_(AppointmentStatus.ACTIVE),
            )
            .values(
                slot_id=new_slot_id,
                scheduled_at=scheduled_at,
                duration=duration,
                rescheduled_at=rescheduled_at,
                updated_at=rescheduled_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def list_by_patient(
        db: Session, patient_id: int, status: Optional[str] = None
    ) -> list[Appointment]:
        query = db.query(Appointment).filter(Appointment.patient_id == patient_id)
        if status:
            query = query.filter(Appointment.status == status)
        return query.order_by(Appointment.scheduled_at.desc()).all()

    @staticmethod
    def list_by_practitioner(
        db: Session,
        practitioner_id: int,
        statuses: Optional[list[str]] = None,
        on_date: Optional[date] = None,
        limit: int = 50,
    ) -> list[Appointment]:
        query = db.query(Appointment).filter(Appointment.practitioner_id == practitioner_id)
        if statuses:
            query = query.filter(Appointment.status.in_(statuses))
        if on_date:
            start = datetime.combine(on_date, time.min)
            query = query.filter(
                Appointment.scheduled_at >= start,
                Appointment.scheduled_at < start + timedelta(days=1),
            )
        return query.order_by(Appointment.scheduled_at).limit(limit).all()

    @staticmethod
    def get_confirmed_started_before(db: Session, cutoff: datetime) -> list[Appointment]:
        """Confirmed appointments that started before the cutoff"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.scheduled_at <= cutoff,
            )
            .order_by(Appointment.scheduled_at)
            .all()
        )

    @staticmethod
    def get_refund_reviews(db: Session) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.refund_review_required.is_(True))
            .order_by(Appointment.cancelled_at)
            .all()
        )
