"""
Appointment service - the booking orchestrator.

Booking runs as a compensating transaction:

    reserve_slot        -> release the slot
    charge_payment      -> refund the charge
    persist_appointment -> (rolled back in place)

If a step fails, the compensations of the steps that already ran are
executed newest first and the original error is raised with the failing
step attached. No database lock is held while the gateway is called; the
slot reservation itself is the only mutual exclusion.
"""

import logging
import math
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import (
    BOOKING_MAX_DAYS_AHEAD,
    BOOKING_MIN_HOURS_AHEAD,
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    DEFAULT_CURRENCY,
)
from ...errors import (
    AppError,
    AuthorizationError,
    BusinessLogicError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from ...models import (
    APPOINTMENT_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    Slot,
    User,
)
from ...models_audit import AuditAction, AuditStatus
from ...models_payment import Payment, PaymentMethod, PaymentStatus
from ...services.audit_sink import AuditEvent, AuditSink, audit_sink, snapshot
from ...shared.transaction import CompensatingTransaction
from ...shared.validators import combine, validate_text_length
from ..payments.service import PaymentService
from ..slots.service import SlotService
from ..users.repository import UserRepository
from .repository import AppointmentRepository
from .schemas import AppointmentCreate, RescheduleRequest

logger = logging.getLogger(__name__)

STAFF_ROLES = ("staff", "manager", "admin")

MIN_APPOINTMENT_MINUTES = 15
MAX_APPOINTMENT_MINUTES = 480

BASE_FEE = 50
BASE_FEE_MINUTES = 30
SPECIALTY_FEE_MULTIPLIERS = {
    "general": 1.0,
    "cardiology": 1.5,
    "neurology": 1.8,
    "surgery": 2.0,
    "pediatrics": 1.2,
}

APPOINTMENT_AUDIT_FIELDS = (
    "status",
    "slot_id",
    "scheduled_at",
    "payment_id",
    "cancellation_reason",
    "refund_review_required",
)


def calculate_appointment_fee(duration: int, specialty: Optional[str] = "general") -> int:
    """Base fee per 30 minutes scaled by the practitioner's specialty, rounded half up"""
    multiplier = SPECIALTY_FEE_MULTIPLIERS.get((specialty or "general").lower(), 1.0)
    return int(math.floor(BASE_FEE * (duration / BASE_FEE_MINUTES) * multiplier + 0.5))


class AppointmentService:
    """Service layer for appointment booking and lifecycle"""

    def __init__(
        self,
        db: Session,
        slot_service: Optional[SlotService] = None,
        payment_service: Optional[PaymentService] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.repo = AppointmentRepository()
        self.audit = audit or audit_sink
        self.clock = clock
        self.slots = slot_service or SlotService(db, audit=self.audit, clock=clock)
        self.payments = payment_service or PaymentService(db, audit=self.audit, clock=clock)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _audit(
        self,
        actor: Optional[User],
        action: str,
        appointment: Optional[Appointment] = None,
        status: str = AuditStatus.SUCCESS,
        request_info: Optional[dict] = None,
        **fields,
    ) -> None:
        resource_id = fields.pop("resource_id", appointment.id if appointment else None)
        patient_id = fields.pop("patient_id", appointment.patient_id if appointment else None)
        self.audit.record(
            AuditEvent(
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                action=action,
                resource_type="appointment",
                resource_id=resource_id,
                patient_id=patient_id,
                status=status,
                **(request_info or {}),
                **fields,
            )
        )

    def _require_user(self, user_id: int, role: str) -> User:
        user = UserRepository.find_user_by_id(self.db, user_id)
        if not user or not user.is_active:
            raise NotFoundError(f"{role.capitalize()} {user_id} not found")
        if user.role != role:
            raise ValidationError(f"User {user_id} is not a {role}")
        return user

    def get_appointment_record(self, appointment_id: int) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    @staticmethod
    def _is_staff(user: User) -> bool:
        return user.role in STAFF_ROLES

    def _authorize(self, appointment: Appointment, actor: User, allow_patient: bool = True,
                   allow_practitioner: bool = True) -> None:
        if self._is_staff(actor):
            return
        if allow_patient and actor.id == appointment.patient_id:
            return
        if allow_practitioner and actor.id == appointment.practitioner_id:
            return
        raise AuthorizationError("You are not allowed to modify this appointment")

    def validate_schedule(self, scheduled_at: datetime, duration: int) -> None:
        """
        Temporal booking rules: future, weekday, business hours and inside the
        advance-booking window.
        """
        now = self.clock()
        if scheduled_at <= now:
            raise ValidationError("Appointment must be scheduled in the future")
        if scheduled_at.weekday() >= 5:
            raise ValidationError("Appointments are only available on weekdays")

        opening = scheduled_at.replace(hour=BUSINESS_HOURS_START, minute=0, second=0, microsecond=0)
        closing = scheduled_at.replace(hour=BUSINESS_HOURS_END, minute=0, second=0, microsecond=0)
        if scheduled_at < opening or scheduled_at + timedelta(minutes=duration) > closing:
            raise ValidationError(
                f"Appointments must be within business hours "
                f"({BUSINESS_HOURS_START:02d}:00-{BUSINESS_HOURS_END:02d}:00)"
            )

        if scheduled_at - now < timedelta(hours=BOOKING_MIN_HOURS_AHEAD):
            raise ValidationError(
                f"Appointments must be booked at least {BOOKING_MIN_HOURS_AHEAD} hours in advance"
            )
        if scheduled_at - now > timedelta(days=BOOKING_MAX_DAYS_AHEAD):
            raise ValidationError(
                f"Appointments cannot be booked more than {BOOKING_MAX_DAYS_AHEAD} days in advance"
            )

    @staticmethod
    def validate_slot_window(slot: Slot, practitioner_id: int, scheduled_at: datetime,
                             duration: int) -> None:
        if slot.practitioner_id != practitioner_id:
            raise ValidationError("Slot does not belong to this practitioner")
        slot_start = combine(slot.date, slot.start_time)
        slot_end = combine(slot.date, slot.end_time)
        if not slot_start <= scheduled_at < slot_end:
            raise ValidationError("Requested time is outside the slot window")
        if scheduled_at + timedelta(minutes=duration) > slot_end:
            raise ValidationError("Appointment would run past the end of the slot")

    def generate_reference(self, appointment_id: int) -> str:
        stamp = int(self.clock().timestamp() * 1000) % 1_000_000
        return f"APT-{stamp:06d}-{appointment_id % 10_000:04d}"

    # ========================================================================
    # BOOKING
    # ========================================================================

    async def create_appointment(
        self, data: AppointmentCreate, requester: User, request_info: Optional[dict] = None
    ) -> tuple[Appointment, Payment]:
        """
        Book an appointment: reserve the slot, charge, then persist.

        Returns:
            (appointment, payment)

        Raises:
            ValidationError, NotFoundError, AuthorizationError: before anything changes
            ConflictError: the slot was taken, nothing persisted
            BusinessLogicError, ExternalServiceError: payment failed, slot released
        """
        # Who is booking for whom
        if requester.role == "patient":
            if data.patient_id not in (None, requester.id):
                raise AuthorizationError("Patients can only book appointments for themselves")
            patient_id = requester.id
        elif self._is_staff(requester):
            if not data.patient_id:
                raise ValidationError("patient_id is required when booking on behalf of a patient")
            patient_id = data.patient_id
        else:
            raise AuthorizationError("Only patients and staff can book appointments")

        patient = self._require_user(patient_id, "patient")
        practitioner = self._require_user(data.practitioner_id, "doctor")

        if practitioner.specialty and practitioner.specialty.lower() != data.department.lower():
            raise ValidationError(
                f"Practitioner specialty '{practitioner.specialty}' does not match "
                f"department '{data.department}'"
            )

        slot = self.slots.get_slot(data.slot_id)
        duration = data.duration or slot.duration
        scheduled_at = data.scheduled_at or combine(slot.date, slot.start_time)

        try:
            reason = validate_text_length(data.reason_for_visit, "Reason for visit", 5, 500)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not MIN_APPOINTMENT_MINUTES <= duration <= MAX_APPOINTMENT_MINUTES:
            raise ValidationError(
                f"Duration must be between {MIN_APPOINTMENT_MINUTES} and "
                f"{MAX_APPOINTMENT_MINUTES} minutes"
            )

        self.validate_schedule(scheduled_at, duration)
        self.validate_slot_window(slot, practitioner.id, scheduled_at, duration)

        if self.repo.has_active_on_slot(self.db, patient.id, slot.id):
            raise ConflictError("Patient already has an appointment in this slot")

        fee = calculate_appointment_fee(duration, practitioner.specialty)
        payment_data = data.payment.model_copy()
        if payment_data.amount is None:
            payment_data.amount = float(fee)
        elif round(payment_data.amount, 2) != round(float(fee), 2):
            raise ValidationError(
                f"Payment amount {payment_data.amount:.2f} does not match the appointment fee {fee:.2f}"
            )
        payment_data.currency = payment_data.currency or DEFAULT_CURRENCY
        self.payments.validate(payment_data)

        logger.info(
            f"📥 Booking slot {slot.id} for patient {patient.id} with practitioner "
            f"{practitioner.id} at {scheduled_at:%Y-%m-%d %H:%M}"
        )

        context = {
            "patient_id": patient.id,
            "practitioner_id": practitioner.id,
            "slot_id": slot.id,
            "idempotency_key": str(uuid.uuid4()),
        }

        def persist(charge: dict) -> tuple[Appointment, Payment]:
            try:
                appointment = self.repo.add_appointment(
                    self.db,
                    patient_id=patient.id,
                    practitioner_id=practitioner.id,
                    slot_id=slot.id,
                    scheduled_at=scheduled_at,
                    duration=duration,
                    reason_for_visit=reason,
                    department=data.department,
                    appointment_type=data.appointment_type,
                    priority=data.priority,
                    fee=float(fee),
                    currency=payment_data.currency,
                    status=AppointmentStatus.SCHEDULED,
                )
                appointment.reference = self.generate_reference(appointment.id)
                payment = self.payments.record_payment(
                    charge,
                    patient_id=patient.id,
                    practitioner_id=practitioner.id,
                    appointment_id=appointment.id,
                    insurance=(
                        payment_data.insurance_details.model_dump()
                        if payment_data.insurance_details
                        else None
                    ),
                )
                appointment.payment_id = payment.id
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Could not save appointment for slot {slot.id}: {e}")
                raise AppError("Could not save the appointment, please try again") from e

            self.db.refresh(appointment)
            self.db.refresh(payment)
            return appointment, payment

        async def refund(charge: dict):
            return await self.payments.refund_charge(charge, "Booking could not be completed")

        txn = CompensatingTransaction("create_appointment")
        try:
            await txn.step("reserve_slot", lambda: self.slots.reserve(slot.id),
                           lambda reserved: self.slots.release(reserved.id))
            charge = await txn.step(
                "charge_payment", lambda: self.payments.charge(payment_data, context), refund
            )
            appointment, payment = await txn.step("persist_appointment", lambda: persist(charge))
        except AppError as e:
            self._audit(
                requester,
                AuditAction.CREATE_APPOINTMENT,
                status=AuditStatus.FAILURE,
                error_message=e.message,
                resource_id=None,
                patient_id=patient.id,
                metadata={"slot_id": slot.id, "step": e.step},
                request_info=request_info,
            )
            if txn.compensation_failures:
                failed_steps = [name for name, _ in txn.compensation_failures]
                logger.critical(
                    f"🚨 Booking for slot {slot.id} left unreconciled state, "
                    f"compensation failed for {failed_steps}"
                )
                if e.details is None or isinstance(e.details, dict):
                    e.details = {**(e.details or {}), "compensation_failed": failed_steps}
            raise

        logger.info(f"✅ Appointment {appointment.reference} booked for patient {patient.id}")
        self._audit(
            requester,
            AuditAction.CREATE_APPOINTMENT,
            appointment,
            after=snapshot(appointment, APPOINTMENT_AUDIT_FIELDS),
            metadata={"fee": appointment.fee, "payment_method": payment.method},
            request_info=request_info,
        )
        return appointment, payment

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def reschedule_appointment(
        self,
        appointment_id: int,
        data: RescheduleRequest,
        requester: User,
        request_info: Optional[dict] = None,
    ) -> Appointment:
        """Move an active appointment to another slot of the same practitioner"""
        appointment = self.get_appointment_record(appointment_id)
        self._authorize(appointment, requester, allow_practitioner=False)

        if appointment.status not in AppointmentStatus.ACTIVE:
            raise BusinessLogicError(f"Cannot reschedule a {appointment.status} appointment")
        if data.new_slot_id == appointment.slot_id:
            raise ValidationError("Appointment is already in this slot")

        new_slot = self.slots.get_slot(data.new_slot_id)
        scheduled_at = data.scheduled_at or combine(new_slot.date, new_slot.start_time)
        duration = appointment.duration

        self.validate_schedule(scheduled_at, duration)
        self.validate_slot_window(new_slot, appointment.practitioner_id, scheduled_at, duration)
        if self.repo.has_active_on_slot(self.db, appointment.patient_id, new_slot.id):
            raise ConflictError("Patient already has an appointment in this slot")

        old_slot_id = appointment.slot_id
        before = snapshot(appointment, APPOINTMENT_AUDIT_FIELDS)

        def move(_reserved):
            moved = self.repo.move_to_slot(
                self.db, appointment.id, old_slot_id, new_slot.id, scheduled_at, duration,
                self.clock(),
            )
            if not moved:
                raise ConflictError("Appointment changed while rescheduling, please retry")
            return moved

        txn = CompensatingTransaction("reschedule_appointment")
        reserved = await txn.step("reserve_slot", lambda: self.slots.reserve(new_slot.id),
                                  lambda slot: self.slots.release(slot.id))
        await txn.step("move_appointment", lambda: move(reserved))

        self.slots.release(old_slot_id)

        appointment = self.get_appointment_record(appointment_id)
        logger.info(
            f"🔁 Appointment {appointment.id} moved from slot {old_slot_id} to {new_slot.id}"
        )
        self._audit(
            requester,
            AuditAction.RESCHEDULE_APPOINTMENT,
            appointment,
            before=before,
            after=snapshot(appointment, APPOINTMENT_AUDIT_FIELDS),
            description=data.reason,
            request_info=request_info,
        )
        return appointment

    async def cancel_appointment(
        self,
        appointment_id: int,
        requester: User,
        reason: str,
        request_info: Optional[dict] = None,
    ) -> dict:
        """
        Cancel an appointment, free its slot and refund a completed payment.

        A failed refund does not undo the cancellation. The appointment is
        flagged for manual review and the result reports the refund as failed.
        """
        appointment = self.get_appointment_record(appointment_id)
        self._authorize(appointment, requester)

        try:
            reason = validate_text_length(reason, "Cancellation reason", 5, 500)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if appointment.status not in AppointmentStatus.ACTIVE:
            raise BusinessLogicError(f"Cannot cancel a {appointment.status} appointment")

        now = self.clock()
        if appointment.scheduled_at <= now:
            raise BusinessLogicError("Cannot cancel past appointments")
        if appointment.scheduled_at.date() <= now.date():
            raise BusinessLogicError("Same-day cancellations are not allowed, please call the clinic")

        before = snapshot(appointment, APPOINTMENT_AUDIT_FIELDS)
        self._transition(
            appointment,
            AppointmentStatus.CANCELLED,
            cancelled_by=requester.id,
            cancelled_at=now,
            cancellation_reason=reason,
        )
        self.slots.release(appointment.slot_id)

        refund = {"status": "not_applicable"}
        payment = self.payments.get_by_appointment(appointment.id)
        settled_at_hospital = payment is not None and payment.method in PaymentMethod.OFFLINE
        if payment and payment.status == PaymentStatus.COMPLETED and settled_at_hospital:
            refund = {
                "status": "at_hospital",
                "amount": payment.amount,
                "reason": "Hospital payments are refunded at the hospital desk",
            }
        elif payment and payment.status == PaymentStatus.COMPLETED:
            try:
                payment = await self.payments.refund(
                    payment, reason=f"Appointment cancelled: {reason}", actor=requester
                )
                refund = {
                    "status": "completed",
                    "amount": payment.refund_amount,
                    "refund_id": payment.refund_transaction_id,
                }
            except ExternalServiceError as e:
                appointment = self.get_appointment_record(appointment_id)
                appointment.refund_review_required = True
                self.db.commit()
                logger.error(
                    f"❌ Appointment {appointment.id} cancelled but refund failed, "
                    f"flagged for review: {e.message}"
                )
                refund = {"status": "failed", "error": e.message}
        elif payment and payment.status == PaymentStatus.PENDING:
            refund = {"status": "not_required", "reason": "Payment was never settled"}

        appointment = self.get_appointment_record(appointment_id)
        logger.info(f"🗑️ Appointment {appointment.id} cancelled by user {requester.id}")
        self._audit(
            requester,
            AuditAction.CANCEL_APPOINTMENT,
            appointment,
            status=AuditStatus.WARNING if refund["status"] == "failed" else AuditStatus.SUCCESS,
            before=before,
            after=snapshot(appointment, APPOINTMENT_AUDIT_FIELDS),
            description=reason,
            metadata={"refund": refund},
            request_info=request_info,
        )
        return {"appointment": appointment, "refund": refund}

    def _transition(self, appointment: Appointment, target: str, **values) -> None:
        """Conditional status change from any valid source state"""
        sources = APPOINTMENT_TRANSITIONS[target]
        if appointment.status not in sources:
            raise BusinessLogicError(
                f"Cannot change appointment from {appointment.status} to {target}"
            )
        if not self.repo.transition(self.db, appointment.id, sources, target, **values):
            current = self.get_appointment_record(appointment.id)
            raise ConflictError(
                f"Appointment is now {current.status}, cannot change it to {target}"
            )

    def confirm_appointment(
        self, appointment_id: int, actor: User, request_info: Optional[dict] = None
    ) -> Appointment:
        appointment = self.get_appointment_record(appointment_id)
        self._authorize(appointment, actor, allow_patient=False)

        before = snapshot(appointment, APPOINTMENT_AUDIT_FIELDS)
        self._transition(appointment, AppointmentStatus.CONFIRMED, confirmed_at=self.clock())

        appointment = self.get_appointment_record(appointment_id)
        logger.info(f"✅ Appointment {appointment.id} confirmed")
        self._audit(
            actor,
            AuditAction.CONFIRM_APPOINTMENT,
            appointment,
            before=before,
            after=snapshot(appointment, APPOINTMENT_AUDIT_FIELDS),
            request_info=request_info,
        )
        return appointment

    def complete_appointment(
        self, appointment_id: int, actor: Optional[User] = None, request_info: Optional[dict] = None
    ) -> Appointment:
        """Mark a confirmed appointment completed. actor None means the scheduler."""
        appointment = self.get_appointment_record(appointment_id)
        if actor is not None:
            self._authorize(appointment, actor, allow_patient=False)

        before = snapshot(appointment, APPOINTMENT_AUDIT_FIELDS)
        self._transition(appointment, AppointmentStatus.COMPLETED, completed_at=self.clock())
        self.slots.mark_completed(appointment.slot_id)

        appointment = self.get_appointment_record(appointment_id)
        logger.info(f"🏁 Appointment {appointment.id} completed")
        self._audit(
            actor,
            AuditAction.COMPLETE_APPOINTMENT,
            appointment,
            before=before,
            after=snapshot(appointment, APPOINTMENT_AUDIT_FIELDS),
            request_info=request_info,
        )
        return appointment

    def record_hospital_payment(
        self,
        appointment_id: int,
        actor: User,
        transaction_id: Optional[str] = None,
        request_info: Optional[dict] = None,
    ) -> Payment:
        """Staff mark the cash or bank transfer payment of an appointment as paid"""
        appointment = self.get_appointment_record(appointment_id)
        if not self._is_staff(actor):
            raise AuthorizationError("Only staff can record hospital payments")
        if appointment.status == AppointmentStatus.CANCELLED:
            raise BusinessLogicError("Cannot take payment for a cancelled appointment")

        payment = self.payments.get_by_appointment(appointment.id)
        if not payment:
            raise NotFoundError(f"No payment recorded for appointment {appointment_id}")
        return self.payments.settle_offline(payment, actor, transaction_id, request_info)

    def complete_past_appointments(self) -> int:
        """Complete confirmed appointments whose visit has ended"""
        now = self.clock()
        completed = 0
        for appointment in self.repo.get_confirmed_started_before(self.db, now):
            if appointment.scheduled_at + timedelta(minutes=appointment.duration) > now:
                continue
            try:
                self.complete_appointment(appointment.id)
                completed += 1
            except (BusinessLogicError, ConflictError) as e:
                logger.warning(f"⚠️ Skipped completing appointment {appointment.id}: {e.message}")
        return completed

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_appointment(self, appointment_id: int, actor: User) -> Appointment:
        appointment = self.get_appointment_record(appointment_id)
        if not self._is_staff(actor) and actor.id not in (
            appointment.patient_id,
            appointment.practitioner_id,
        ):
            raise AuthorizationError("You do not have access to this appointment")
        return appointment

    def list_patient_appointments(
        self, patient_id: int, actor: User, status: Optional[str] = None
    ) -> list[Appointment]:
        if actor.id != patient_id and not self._is_staff(actor):
            raise AuthorizationError("You can only view your own appointments")
        if status and status not in AppointmentStatus.ALL:
            raise ValidationError(f"Unknown status '{status}'")
        return self.repo.list_by_patient(self.db, patient_id, status)

    def list_practitioner_appointments(
        self,
        practitioner_id: int,
        actor: User,
        statuses: Optional[list[str]] = None,
        on_date: Optional[date] = None,
        limit: int = 50,
    ) -> list[Appointment]:
        """A practitioner's appointments, earliest first. Doctors only see their own."""
        if actor.role == "doctor" and actor.id != practitioner_id:
            raise AuthorizationError("Not authorized to access these appointments")
        if actor.role != "doctor" and not self._is_staff(actor):
            raise AuthorizationError("Not authorized to access these appointments")
        unknown = [s for s in statuses or [] if s not in AppointmentStatus.ALL]
        if unknown:
            raise ValidationError(f"Unknown status '{unknown[0]}'")
        if not 1 <= limit <= 200:
            raise ValidationError("limit must be between 1 and 200")
        return self.repo.list_by_practitioner(self.db, practitioner_id, statuses, on_date, limit)

    def get_refund_reviews(self) -> list[Appointment]:
        return self.repo.get_refund_reviews(self.db)

    def quote_fee(self, practitioner_id: int, duration: int) -> dict:
        practitioner = self._require_user(practitioner_id, "doctor")
        if not MIN_APPOINTMENT_MINUTES <= duration <= MAX_APPOINTMENT_MINUTES:
            raise ValidationError(
                f"Duration must be between {MIN_APPOINTMENT_MINUTES} and "
                f"{MAX_APPOINTMENT_MINUTES} minutes"
            )
        specialty = (practitioner.specialty or "general").lower()
        return {
            "duration": duration,
            "specialty": specialty,
            "fee": float(calculate_appointment_fee(duration, specialty)),
            "currency": DEFAULT_CURRENCY,
        }
