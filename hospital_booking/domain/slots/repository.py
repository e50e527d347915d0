"""Slot repository - Database operations for practitioner slots

State changes that race with other requests (reserve, release, block,
unblock, complete) are single conditional UPDATE statements. The WHERE
clause carries the precondition and the affected row count tells the
caller whether it won.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, exists, update
from sqlalchemy.orm import Session

from ...models import Appointment, AppointmentStatus, Slot, SlotStatus


class SlotRepository:
    """Repository for slot database operations"""

    @staticmethod
    def get_slot(db: Session, slot_id: int) -> Optional[Slot]:
        """Get slot by ID"""
        return db.query(Slot).filter(Slot.id == slot_id).first()

    @staticmethod
    def create_slot(db: Session, **data) -> Slot:
        """Create a slot and commit it"""
        slot = Slot(**data)
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    @staticmethod
    def find_conflicts(
        db: Session,
        practitioner_id: int,
        slot_date: date,
        start_time: str,
        end_time: str,
        exclude_slot_id: Optional[int] = None,
    ) -> list[Slot]:
        """Slots of the practitioner on that date overlapping [start_time, end_time)"""
        query = db.query(Slot).filter(
            Slot.practitioner_id == practitioner_id,
            Slot.date == slot_date,
            Slot.start_time < end_time,
            Slot.end_time > start_time,
        )
        if exclude_slot_id:
            query = query.filter(Slot.id != exclude_slot_id)
        return query.order_by(Slot.start_time).all()

    @staticmethod
    def reserve(db: Session, slot_id: int) -> bool:
        """Take one unit of capacity. False when the slot is not reservable or full."""
        result = db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.status.in_(SlotStatus.RESERVABLE),
                Slot.current_bookings < Slot.max_patients,
            )
            .values(
                current_bookings=Slot.current_bookings + 1,
                status=SlotStatus.BOOKED,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def release(db: Session, slot_id: int) -> bool:
        """Give back one unit of capacity; the slot reopens when it empties"""
        result = db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.status == SlotStatus.BOOKED,
                Slot.current_bookings > 0,
            )
            .values(
                current_bookings=Slot.current_bookings - 1,
                status=case(
                    (Slot.current_bookings <= 1, SlotStatus.AVAILABLE),
                    else_=SlotStatus.BOOKED,
                ),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def block(
        db: Session,
        slot_id: int,
        practitioner_id: int,
        reason: str,
        description: Optional[str],
        blocked_by: int,
        blocked_at: datetime,
    ) -> bool:
        """AVAILABLE → BLOCKED, only while nobody holds a booking on it"""
        result = db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.practitioner_id == practitioner_id,
                Slot.status == SlotStatus.AVAILABLE,
                Slot.current_bookings == 0,
            )
            .values(
                status=SlotStatus.BLOCKED,
                block_reason=reason,
                block_description=description,
                blocked_by=blocked_by,
                blocked_at=blocked_at,
                updated_at=blocked_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def unblock(db: Session, slot_id: int, practitioner_id: int, now: datetime) -> bool:
        """BLOCKED → AVAILABLE, clearing the block metadata"""
        result = db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.practitioner_id == practitioner_id,
                Slot.status == SlotStatus.BLOCKED,
            )
            .values(
                status=SlotStatus.AVAILABLE,
                block_reason=None,
                block_description=None,
                blocked_by=None,
                blocked_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def mark_completed(db: Session, slot_id: int) -> bool:
        """BOOKED → COMPLETED once no active appointment still holds the slot"""
        still_held = exists().where(
            Appointment.slot_id == slot_id,
            Appointment.status.in_(AppointmentStatus.ACTIVE),
        )
        result = db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == SlotStatus.BOOKED, ~still_held)
            .values(status=SlotStatus.COMPLETED, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def get_reservable_slots(db: Session, practitioner_id: int, slot_date: date) -> list[Slot]:
        """Slots with spare capacity on a date, earliest first"""
        return (
            db.query(Slot)
            .filter(
                Slot.practitioner_id == practitioner_id,
                Slot.date == slot_date,
                Slot.status.in_(SlotStatus.RESERVABLE),
                Slot.current_bookings < Slot.max_patients,
            )
            .order_by(Slot.start_time)
            .all()
        )

    @staticmethod
    def get_slots_in_range(
        db: Session, practitioner_id: int, start_date: date, end_date: date
    ) -> list[Slot]:
        return (
            db.query(Slot)
            .filter(
                Slot.practitioner_id == practitioner_id,
                Slot.date >= start_date,
                Slot.date <= end_date,
            )
            .order_by(Slot.date, Slot.start_time)
            .all()
        )

    @staticmethod
    def get_blockable_in_window(
        db: Session, practitioner_id: int, slot_date: date, start_time: str, end_time: str
    ) -> list[Slot]:
        """Empty AVAILABLE slots overlapping a time window"""
        return (
            db.query(Slot)
            .filter(
                Slot.practitioner_id == practitioner_id,
                Slot.date == slot_date,
                Slot.start_time < end_time,
                Slot.end_time > start_time,
                Slot.status == SlotStatus.AVAILABLE,
                Slot.current_bookings == 0,
            )
            .order_by(Slot.start_time)
            .all()
        )

