"""Slot service - Business logic for practitioner availability"""

import calendar
import logging
import uuid
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ...models import Slot, SlotType, User
from ...models_audit import AuditAction, AuditStatus
from ...services.audit_sink import AuditEvent, AuditSink, audit_sink, snapshot
from ...shared.validators import combine, minutes_between, normalize_time
from ..users.repository import UserRepository
from .repository import SlotRepository
from .schemas import (
    MAX_RECURRING_OCCURRENCES,
    QuickBlockRequest,
    RecurringPattern,
    RecurringSlotCreate,
    SlotCreate,
)

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 5
MAX_SLOT_MINUTES = 480

SLOT_AUDIT_FIELDS = ("status", "current_bookings", "max_patients", "block_reason", "blocked_by")


def _add_months(day: date, months: int) -> Optional[date]:
    """Same day-of-month `months` later, None when that month is too short"""
    month_index = day.month - 1 + months
    year, month = day.year + month_index // 12, month_index % 12 + 1
    if day.day > calendar.monthrange(year, month)[1]:
        return None
    return day.replace(year=year, month=month)


def expand_recurrence(start: date, pattern: RecurringPattern) -> list[date]:
    """
    Dates produced by a recurrence pattern.

    Occurrences are counted before exceptions are removed, so an excepted
    date still uses up one of `occurrences`.
    """
    limit = pattern.occurrences or MAX_RECURRING_OCCURRENCES
    exceptions = set(pattern.exceptions)
    dates: list[date] = []

    def within_bounds(day: date) -> bool:
        return pattern.end_date is None or day <= pattern.end_date

    if pattern.frequency == "DAILY":
        day = start
        while within_bounds(day) and len(dates) < limit:
            dates.append(day)
            day += timedelta(days=pattern.interval)

    elif pattern.frequency == "WEEKLY":
        weekdays = set(pattern.days_of_week or [start.weekday()])
        week_start = start - timedelta(days=start.weekday())
        day = start
        while within_bounds(day) and len(dates) < limit:
            week_number = (day - week_start).days // 7
            if day.weekday() in weekdays and week_number % pattern.interval == 0:
                dates.append(day)
            day += timedelta(days=1)

    else:  # MONTHLY
        step = 0
        # Bounded so a pattern anchored on the 31st cannot loop forever
        while len(dates) < limit and step <= limit * 12:
            day = _add_months(start, step * pattern.interval)
            step += 1
            if day is None:
                continue
            if not within_bounds(day):
                break
            dates.append(day)

    return [day for day in dates if day not in exceptions]


class SlotService:
    """Service layer for the slot store"""

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.repo = SlotRepository()
        self.audit = audit or audit_sink
        self.clock = clock

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _audit(
        self,
        actor: Optional[User],
        action: str,
        resource_id=None,
        status: str = AuditStatus.SUCCESS,
        request_info: Optional[dict] = None,
        **fields,
    ) -> None:
        self.audit.record(
            AuditEvent(
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                action=action,
                resource_type="slot",
                resource_id=resource_id,
                status=status,
                **(request_info or {}),
                **fields,
            )
        )

    def _require_practitioner(self, practitioner_id: int) -> User:
        practitioner = UserRepository.find_user_by_id(self.db, practitioner_id)
        if not practitioner or not practitioner.is_active:
            raise NotFoundError(f"Practitioner {practitioner_id} not found")
        if practitioner.role != "doctor":
            raise ValidationError(f"User {practitioner_id} is not a practitioner")
        return practitioner

    def get_slot(self, slot_id: int) -> Slot:
        slot = self.repo.get_slot(self.db, slot_id)
        if not slot:
            raise NotFoundError(f"Slot {slot_id} not found")
        return slot

    def _validate_window(self, slot_date: date, start_time: str, end_time: str,
                         duration: Optional[int]) -> int:
        """Check the window and return the effective duration"""
        window = minutes_between(start_time, end_time)
        if window <= 0:
            raise ValidationError("End time must be after start time")

        duration = duration or window
        if not MIN_SLOT_MINUTES <= duration <= MAX_SLOT_MINUTES:
            raise ValidationError(
                f"Duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes"
            )
        if duration > window:
            raise ValidationError("Duration cannot exceed the slot window")

        if combine(slot_date, start_time) <= self.clock():
            raise ValidationError("Cannot create slots in the past")
        return duration

    def _slot_fields(self, practitioner: User, data: SlotCreate, duration: int) -> dict:
        return {
            "practitioner_id": practitioner.id,
            "date": data.date,
            "start_time": data.start_time,
            "end_time": data.end_time,
            "duration": duration,
            "max_patients": data.max_patients,
            "slot_type": data.slot_type,
            "instructions": data.instructions,
            "room": data.room,
            "building": data.building,
            "floor": data.floor,
            "department": data.department or practitioner.specialty,
            "created_by": practitioner.id,
        }

    # ========================================================================
    # CREATION
    # ========================================================================

    def check_conflicts(
        self,
        practitioner_id: int,
        slot_date: date,
        start_time: str,
        end_time: str,
        exclude_slot_id: Optional[int] = None,
    ) -> list[Slot]:
        """Existing slots overlapping the window, blocked ones included"""
        return self.repo.find_conflicts(
            self.db, practitioner_id, slot_date, start_time, end_time, exclude_slot_id
        )

    def create_slot(
        self, practitioner_id: int, data: SlotCreate, request_info: Optional[dict] = None
    ) -> Slot:
        """Create a single slot after validation and conflict checks"""
        practitioner = self._require_practitioner(practitioner_id)
        logger.info(
            f"📥 Creating slot for practitioner {practitioner.id} on {data.date} "
            f"{data.start_time}-{data.end_time}"
        )

        try:
            duration = self._validate_window(data.date, data.start_time, data.end_time, data.duration)

            conflicts = self.check_conflicts(
                practitioner.id, data.date, data.start_time, data.end_time
            )
            if conflicts:
                raise ConflictError(
                    "Slot overlaps existing slots",
                    details=[
                        {"id": s.id, "start_time": s.start_time, "end_time": s.end_time,
                         "status": s.status}
                        for s in conflicts
                    ],
                )

            try:
                slot = self.repo.create_slot(self.db, **self._slot_fields(practitioner, data, duration))
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError("Slot already exists for this window") from e
        except (ValidationError, ConflictError) as e:
            logger.warning(f"⚠️ Slot creation rejected for practitioner {practitioner.id}: {e.message}")
            self._audit(
                practitioner,
                AuditAction.CREATE_SLOTS,
                status=AuditStatus.FAILURE,
                error_message=e.message,
                metadata={"date": data.date.isoformat(), "start_time": data.start_time},
                request_info=request_info,
            )
            raise

        logger.info(f"✅ Slot {slot.id} created for practitioner {practitioner.id}")
        self._audit(
            practitioner,
            AuditAction.CREATE_SLOTS,
            resource_id=slot.id,
            after=snapshot(slot, ("date", "start_time", "end_time", "status", "max_patients")),
            request_info=request_info,
        )
        return slot

    def create_recurring_slots(
        self, practitioner_id: int, data: RecurringSlotCreate, request_info: Optional[dict] = None
    ) -> dict:
        """
        Expand a recurrence pattern and create one slot per occurrence.

        Each occurrence is validated, conflict checked and committed on its
        own. Failures are collected per date instead of aborting the batch.
        """
        practitioner = self._require_practitioner(practitioner_id)
        occurrences = expand_recurrence(data.date, data.recurring_pattern)
        group = str(uuid.uuid4())
        slot_type = SlotType.RECURRING if data.slot_type == SlotType.REGULAR else data.slot_type

        logger.info(
            f"📥 Creating {len(occurrences)} recurring slots for practitioner {practitioner.id} "
            f"({data.recurring_pattern.frequency})"
        )

        created: list[Slot] = []
        failed: list[dict] = []
        for day in occurrences:
            try:
                duration = self._validate_window(day, data.start_time, data.end_time, data.duration)
                if self.check_conflicts(practitioner.id, day, data.start_time, data.end_time):
                    raise ConflictError("Slot overlaps existing slots")

                fields = self._slot_fields(practitioner, data, duration)
                fields.update(
                    date=day, slot_type=slot_type, is_recurring=True, recurrence_group=group
                )
                try:
                    created.append(self.repo.create_slot(self.db, **fields))
                except IntegrityError as e:
                    self.db.rollback()
                    raise ConflictError("Slot already exists for this window") from e
            except (ValidationError, ConflictError) as e:
                failed.append({"date": day.isoformat(), "reason": e.message})

        logger.info(
            f"✅ Recurring slots for practitioner {practitioner.id}: "
            f"{len(created)} created, {len(failed)} failed"
        )
        self._audit(
            practitioner,
            AuditAction.CREATE_SLOTS,
            resource_id=group,
            status=AuditStatus.SUCCESS if created else AuditStatus.FAILURE,
            description=f"Recurring slots: {len(created)} created, {len(failed)} failed",
            metadata={"recurrence_group": group, "failed": failed},
            request_info=request_info,
        )
        return {"created": created, "failed": failed, "recurrence_group": group}

    # ========================================================================
    # RESERVATION
    # ========================================================================

    def reserve(self, slot_id: int) -> Slot:
        """Claim one unit of capacity or raise ConflictError"""
        if not self.repo.reserve(self.db, slot_id):
            if not self.repo.get_slot(self.db, slot_id):
                raise NotFoundError(f"Slot {slot_id} not found")
            logger.info(f"⚠️ Slot {slot_id} reservation lost, no capacity left")
            raise ConflictError("Slot is no longer available")

        logger.info(f"🔒 Slot {slot_id} reserved")
        return self.get_slot(slot_id)

    def release(self, slot_id: int) -> bool:
        """Return one unit of capacity. False when nothing was held."""
        released = self.repo.release(self.db, slot_id)
        if released:
            logger.info(f"🔓 Slot {slot_id} released")
        else:
            logger.warning(f"⚠️ Slot {slot_id} release was a no-op")
        return released

    def mark_completed(self, slot_id: int) -> bool:
        return self.repo.mark_completed(self.db, slot_id)

    # ========================================================================
    # BLOCKING
    # ========================================================================

    def block_slot(
        self,
        slot_id: int,
        actor: User,
        reason: str,
        description: Optional[str] = None,
        request_info: Optional[dict] = None,
    ) -> Slot:
        slot = self.get_slot(slot_id)
        if slot.practitioner_id != actor.id:
            raise AuthorizationError("You can only block your own slots")

        before = snapshot(slot, SLOT_AUDIT_FIELDS)
        if not self.repo.block(
            self.db, slot_id, actor.id, reason, description, actor.id, self.clock()
        ):
            raise ConflictError(
                f"Slot {slot_id} cannot be blocked (status {slot.status}, "
                f"{slot.current_bookings} bookings)"
            )

        slot = self.get_slot(slot_id)
        self._audit(
            actor,
            AuditAction.BLOCK_SLOTS,
            resource_id=slot_id,
            before=before,
            after=snapshot(slot, SLOT_AUDIT_FIELDS),
            description=description,
            request_info=request_info,
        )
        return slot

    def block_slots(
        self,
        slot_ids: list[int],
        actor: User,
        reason: str,
        description: Optional[str] = None,
        request_info: Optional[dict] = None,
    ) -> dict:
        """Block several slots, reporting failures per slot"""
        blocked, errors = [], []
        for slot_id in slot_ids:
            try:
                blocked.append(self.block_slot(slot_id, actor, reason, description, request_info))
            except (AuthorizationError, ConflictError, NotFoundError) as e:
                errors.append({"slot_id": slot_id, "error": e.kind, "message": e.message})

        logger.info(f"🚫 Practitioner {actor.id} blocked {len(blocked)}/{len(slot_ids)} slots")
        return {"blocked": blocked, "errors": errors}

    def unblock_slot(self, slot_id: int, actor: User, request_info: Optional[dict] = None) -> Slot:
        slot = self.get_slot(slot_id)
        if slot.practitioner_id != actor.id:
            raise AuthorizationError("You can only unblock your own slots")

        before = snapshot(slot, SLOT_AUDIT_FIELDS)
        if not self.repo.unblock(self.db, slot_id, actor.id, self.clock()):
            raise ConflictError(f"Slot {slot_id} is not blocked")

        slot = self.get_slot(slot_id)
        self._audit(
            actor,
            AuditAction.UNBLOCK_SLOTS,
            resource_id=slot_id,
            before=before,
            after=snapshot(slot, SLOT_AUDIT_FIELDS),
            request_info=request_info,
        )
        return slot

    def unblock_slots(
        self, slot_ids: list[int], actor: User, request_info: Optional[dict] = None
    ) -> dict:
        unblocked, errors = [], []
        for slot_id in slot_ids:
            try:
                unblocked.append(self.unblock_slot(slot_id, actor, request_info))
            except (AuthorizationError, ConflictError, NotFoundError) as e:
                errors.append({"slot_id": slot_id, "error": e.kind, "message": e.message})
        return {"unblocked": unblocked, "errors": errors}

    def quick_block(
        self, actor: User, data: QuickBlockRequest, request_info: Optional[dict] = None
    ) -> dict:
        """Block every open slot overlapping a time range"""
        if data.end_time <= data.start_time:
            raise ValidationError("End time must be after start time")

        candidates = self.repo.get_blockable_in_window(
            self.db, actor.id, data.date, data.start_time, data.end_time
        )
        if not candidates:
            logger.info(f"ℹ️ Quick block found no open slots for practitioner {actor.id}")
            return {"blocked": [], "errors": []}

        return self.block_slots(
            [slot.id for slot in candidates], actor, data.reason, data.description, request_info
        )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_available_slots(self, practitioner_id: int, slot_date: date) -> list[Slot]:
        """Slots a patient can still book: open, not full and not started"""
        now = self.clock()
        return [
            slot
            for slot in self.repo.get_reservable_slots(self.db, practitioner_id, slot_date)
            if combine(slot.date, slot.start_time) > now
        ]

    @staticmethod
    def summarize(slots: list[Slot]) -> dict:
        return {
            "total": len(slots),
            "by_status": dict(Counter(slot.status for slot in slots)),
            "by_type": dict(Counter(slot.slot_type for slot in slots)),
            "by_date": dict(Counter(slot.date.isoformat() for slot in slots)),
            "total_capacity": sum(slot.max_patients for slot in slots),
            "total_bookings": sum(slot.current_bookings for slot in slots),
        }

    def get_doctor_availability(
        self,
        practitioner_id: int,
        start_date: date,
        end_date: date,
        actor: Optional[User] = None,
        request_info: Optional[dict] = None,
    ) -> dict:
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        self._require_practitioner(practitioner_id)

        slots = self.repo.get_slots_in_range(self.db, practitioner_id, start_date, end_date)
        self._audit(
            actor,
            AuditAction.VIEW_SCHEDULE,
            resource_id=practitioner_id,
            metadata={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            request_info=request_info,
        )
        return {"slots": slots, "summary": self.summarize(slots)}

    def get_today_schedule(self, practitioner: User, request_info: Optional[dict] = None) -> dict:
        today = self.clock().date()
        slots = self.repo.get_slots_in_range(self.db, practitioner.id, today, today)
        self._audit(
            practitioner,
            AuditAction.VIEW_TODAY_SCHEDULE,
            resource_id=practitioner.id,
            request_info=request_info,
        )
        return {
            "date": today,
            "slots": slots,
            "summary": self.summarize(slots),
        }

    def get_conflicts(
        self, practitioner_id: int, slot_date: date, start_time: str, end_time: str
    ) -> list[Slot]:
        try:
            start_time, end_time = normalize_time(start_time), normalize_time(end_time)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if start_time >= end_time:
            raise ValidationError("End time must be after start time")
        return self.check_conflicts(practitioner_id, slot_date, start_time, end_time)

