"""
Payment service - validation, fraud screening, charging and refunds.

This is the only writer of Payment status. Gateway calls go through
PaymentGatewayClient; transport failures are retried with the configured
RetryPolicy, declines never are. Refunds get a single attempt and a failed
refund is flagged on the payment for manual reconciliation.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ...config import (
    DEFAULT_CURRENCY,
    FRAUD_BLOCK_THRESHOLD,
    FRAUD_WARN_THRESHOLD,
    PAYMENT_MAX_AMOUNT,
    PAYMENT_MAX_ATTEMPTS,
    PAYMENT_RETRY_BASE_DELAY,
)
from ...errors import (
    AuthorizationError,
    BusinessLogicError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from ...models import User
from ...models_audit import AuditAction, AuditStatus
from ...models_payment import Payment, PaymentMethod, PaymentStatus
from ...services.audit_sink import AuditEvent, AuditSink, audit_sink
from ...services.payment_gateway import GatewayError, GatewayUnavailable, PaymentGatewayClient
from ...shared.retry import RetryExhausted, RetryPolicy
from ...shared.validators import is_valid_card_number
from .repository import PaymentRepository
from .schemas import PaymentData

logger = logging.getLogger(__name__)

WALLET_TYPES = ("paypal", "apple_pay", "google_pay")
STAFF_ROLES = ("staff", "manager", "admin")


class FraudDetector(Protocol):
    """Optional risk scoring hook"""

    async def check_transaction(self, data: dict) -> dict:
        """Return {"riskScore": 0-100, "recommendation": "ALLOW" | "REVIEW" | "BLOCK"}"""
        ...


def is_gateway_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayUnavailable)


class PaymentService:
    """Service layer for payments"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGatewayClient] = None,
        fraud_detector: Optional[FraudDetector] = None,
        retry_policy: Optional[RetryPolicy] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.repo = PaymentRepository()
        self.gateway = gateway or PaymentGatewayClient()
        self.fraud_detector = fraud_detector
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=PAYMENT_MAX_ATTEMPTS,
            base_delay=PAYMENT_RETRY_BASE_DELAY,
            is_retryable=is_gateway_retryable,
        )
        self.audit = audit or audit_sink
        self.clock = clock

    def _audit(self, action: str, status: str, actor: Optional[User] = None, **fields) -> None:
        self.audit.record(
            AuditEvent(
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                action=action,
                resource_type="payment",
                status=status,
                **fields,
            )
        )

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(self, data: PaymentData) -> None:
        """
        Check a payment instrument before any money moves.

        Raises:
            ValidationError: describing the first problem found
        """
        if data.amount is None or data.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if data.amount > PAYMENT_MAX_AMOUNT:
            raise ValidationError(f"Payment amount cannot exceed {PAYMENT_MAX_AMOUNT:.2f}")

        if data.method not in PaymentMethod.ALL:
            raise ValidationError(
                f"Invalid payment method '{data.method}'. Use one of {', '.join(PaymentMethod.ALL)}"
            )

        if data.method == PaymentMethod.CARD:
            self._validate_card(data)
        elif data.method == PaymentMethod.DIGITAL_WALLET:
            wallet = data.wallet_details
            if not wallet:
                raise ValidationError("Wallet details are required for digital wallet payments")
            if wallet.wallet_type not in WALLET_TYPES:
                raise ValidationError(f"Unsupported wallet type '{wallet.wallet_type}'")
            if not wallet.wallet_id.strip():
                raise ValidationError("Wallet id is required")
        elif data.method == PaymentMethod.INSURANCE:
            insurance = data.insurance_details
            if not insurance:
                raise ValidationError("Insurance details are required for insurance payments")
            if not insurance.policy_number.strip() or not insurance.provider_name.strip():
                raise ValidationError("Insurance provider and policy number are required")

    def _validate_card(self, data: PaymentData) -> None:
        card = data.card_details
        if not card:
            raise ValidationError("Card details are required for card payments")
        if not is_valid_card_number(card.card_number):
            raise ValidationError("Invalid card number")
        if not 1 <= card.expiry_month <= 12:
            raise ValidationError("Invalid card expiry month")

        year = card.expiry_year + 2000 if card.expiry_year < 100 else card.expiry_year
        now = self.clock()
        if (year, card.expiry_month) < (now.year, now.month):
            raise ValidationError("Card has expired")

        if not re.fullmatch(r"\d{3,4}", card.cvv or ""):
            raise ValidationError("Invalid CVV")

    async def check_fraud(self, data: PaymentData, context: Optional[dict] = None) -> Optional[dict]:
        """
        Run the fraud detector when one is configured.

        A high score or a BLOCK recommendation stops the payment. Detector
        outages are logged and never block a payment.
        """
        if not self.fraud_detector:
            return None

        payload = {**data.masked(), **(context or {})}
        try:
            result = await self.fraud_detector.check_transaction(payload)
        except Exception as e:
            logger.error(f"❌ Fraud detection unavailable, continuing without it: {e}")
            return None

        score = result.get("riskScore", 0) or 0
        if score > FRAUD_BLOCK_THRESHOLD or result.get("recommendation") == "BLOCK":
            logger.warning(f"🚨 Payment blocked by fraud screening (score {score})")
            raise BusinessLogicError(
                "Payment blocked by fraud screening", details={"riskScore": score}
            )
        if score > FRAUD_WARN_THRESHOLD:
            logger.warning(f"⚠️ Elevated fraud risk score {score}, allowing payment")
        return result

    # ========================================================================
    # CHARGING
    # ========================================================================

    def _charge_request(self, data: PaymentData, context: dict) -> dict:
        request: dict[str, Any] = {
            "amount": round(data.amount, 2),
            "currency": data.currency or DEFAULT_CURRENCY,
            "method": data.method,
            "metadata": context,
        }
        if data.card_details:
            card = data.card_details
            request["card"] = {
                "number": re.sub(r"[\s-]", "", card.card_number),
                "expMonth": card.expiry_month,
                "expYear": card.expiry_year,
                "cvv": card.cvv,
                "name": card.cardholder_name,
            }
        if data.wallet_details:
            request["wallet"] = {
                "type": data.wallet_details.wallet_type,
                "id": data.wallet_details.wallet_id,
            }
        if data.insurance_details:
            request["insurance"] = {
                "provider": data.insurance_details.provider_name,
                "policyNumber": data.insurance_details.policy_number,
                "groupNumber": data.insurance_details.group_number,
            }
        return request

    async def charge(
        self,
        data: PaymentData,
        context: Optional[dict] = None,
        max_attempts: Optional[int] = None,
    ) -> dict:
        """
        Validate, screen and charge a payment.

        Returns:
            Charge result with transaction_id, status and gateway_status

        Raises:
            ValidationError: bad instrument
            BusinessLogicError: decline or fraud block, never retried
            ExternalServiceError: gateway unreachable after every attempt
        """
        context = context or {}
        self.validate(data)
        logger.info(f"💳 Processing payment: {data.masked()}")

        result = {
            "amount": round(data.amount, 2),
            "currency": data.currency or DEFAULT_CURRENCY,
            "method": data.method,
            "card_last4": None,
            "transaction_id": None,
            "gateway_status": None,
            "status": PaymentStatus.PENDING,
        }
        if data.card_details:
            result["card_last4"] = re.sub(r"[\s-]", "", data.card_details.card_number)[-4:]

        if data.is_offline:
            logger.info(f"🏦 {data.method} payment recorded as pending, settled at the hospital")
            return result

        await self.check_fraud(data, context)

        policy = self.retry_policy
        if max_attempts is not None:
            policy = RetryPolicy(
                max_attempts=max_attempts,
                base_delay=policy.base_delay,
                is_retryable=policy.is_retryable,
                sleep=policy.sleep,
            )

        request = self._charge_request(data, context)
        # Same key on every attempt so the gateway can dedupe a charge that
        # landed but whose response was lost
        idempotency_key = context.get("idempotency_key") or str(uuid.uuid4())

        try:
            response = await policy.run(
                lambda: self.gateway.charge(request, idempotency_key), label="Payment charge"
            )
        except GatewayError as e:
            logger.warning(f"❌ Payment declined: {e.message}")
            self._audit(
                AuditAction.PROCESS_PAYMENT,
                AuditStatus.FAILURE,
                patient_id=context.get("patient_id"),
                error_message=e.message,
                metadata={"method": data.method, "amount": data.amount},
            )
            raise BusinessLogicError(f"Payment declined: {e.message}") from e
        except RetryExhausted as e:
            logger.error(f"❌ Payment gateway unavailable after {e.attempts} attempts: {e.last_error}")
            self._audit(
                AuditAction.PROCESS_PAYMENT,
                AuditStatus.FAILURE,
                patient_id=context.get("patient_id"),
                error_message=str(e.last_error),
                metadata={"method": data.method, "amount": data.amount, "attempts": e.attempts},
            )
            raise ExternalServiceError(
                "Payment gateway is unavailable, please try again later",
                service="payment_gateway",
                details={"attempts": e.attempts},
            ) from e

        result.update(
            transaction_id=response["transactionId"],
            gateway_status=response.get("status"),
            status=PaymentStatus.COMPLETED,
        )
        logger.info(f"✅ Payment charged: transaction {result['transaction_id']}")
        self._audit(
            AuditAction.PROCESS_PAYMENT,
            AuditStatus.SUCCESS,
            resource_id=result["transaction_id"],
            patient_id=context.get("patient_id"),
            metadata={"method": data.method, "amount": result["amount"]},
        )
        return result

    def record_payment(
        self,
        charge: dict,
        patient_id: int,
        practitioner_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
        insurance: Optional[dict] = None,
    ) -> Payment:
        """Stage the Payment row for a charge; committed with the appointment"""
        return self.repo.add_payment(
            self.db,
            appointment_id=appointment_id,
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            amount=charge["amount"],
            currency=charge["currency"],
            method=charge["method"],
            status=charge["status"],
            transaction_id=charge["transaction_id"],
            gateway_status=charge["gateway_status"],
            card_last4=charge["card_last4"],
            insurance_provider=(insurance or {}).get("provider_name"),
            insurance_policy_number=(insurance or {}).get("policy_number"),
            paid_at=self.clock() if charge["status"] == PaymentStatus.COMPLETED else None,
        )

    def settle_offline(
        self,
        payment: Payment,
        actor: User,
        transaction_id: Optional[str] = None,
        request_info: Optional[dict] = None,
    ) -> Payment:
        """
        Record that a cash or bank transfer payment was taken at the hospital.

        Raises:
            AuthorizationError: actor is not staff
            BusinessLogicError: not an offline payment, or already settled
            ConflictError: another request settled it first
        """
        if actor.role not in STAFF_ROLES:
            raise AuthorizationError("Only staff can record hospital payments")
        if payment.method not in PaymentMethod.OFFLINE:
            raise BusinessLogicError(f"{payment.method} payments are settled through the gateway")
        if payment.status != PaymentStatus.PENDING:
            raise BusinessLogicError(f"Payment already processed (status {payment.status})")

        now = self.clock()
        transaction_id = transaction_id or f"HSP-{int(now.timestamp() * 1000)}-{payment.id}"
        if not self.repo.settle_offline(self.db, payment.id, transaction_id, now):
            raise ConflictError("Payment changed while it was being settled, please reload it")

        self.db.refresh(payment)
        logger.info(f"🏦 {payment.method} payment {payment.id} settled at the hospital ({transaction_id})")
        self._audit(
            AuditAction.PROCESS_PAYMENT,
            AuditStatus.SUCCESS,
            actor=actor,
            resource_id=payment.id,
            patient_id=payment.patient_id,
            metadata={"method": payment.method, "amount": payment.amount, "location": "hospital"},
            **(request_info or {}),
        )
        return payment

    # ========================================================================
    # REFUNDS
    # ========================================================================

    async def refund_charge(self, charge: dict, reason: str) -> Optional[dict]:
        """
        Reverse a charge that never got a Payment row (booking compensation).
        Single attempt; the caller logs a failure for reconciliation.
        """
        if not charge.get("transaction_id"):
            return None

        response = await self.gateway.refund(
            {
                "transactionId": charge["transaction_id"],
                "amount": charge["amount"],
                "reason": reason,
            },
            idempotency_key=f"refund-{charge['transaction_id']}",
        )
        logger.info(f"↩️ Charge {charge['transaction_id']} refunded: {reason}")
        return response

    def check_refund_eligibility(self, payment: Payment, amount: float) -> None:
        if payment.status == PaymentStatus.REFUNDED:
            raise BusinessLogicError("Payment has already been refunded")
        if payment.status != PaymentStatus.COMPLETED:
            raise BusinessLogicError(f"Only completed payments can be refunded (status {payment.status})")
        if payment.method in PaymentMethod.OFFLINE:
            raise BusinessLogicError("Hospital payments are refunded at the hospital desk")
        if not payment.transaction_id:
            raise BusinessLogicError("Payment has no gateway transaction to refund")
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if amount > payment.amount:
            raise ValidationError(
                f"Refund amount {amount:.2f} exceeds the original payment {payment.amount:.2f}"
            )

    async def refund(
        self,
        payment: Payment,
        amount: Optional[float] = None,
        reason: str = "Refund requested",
        actor: Optional[User] = None,
    ) -> Payment:
        """
        Refund a completed payment with one gateway call.

        On failure the payment keeps its status, gets refund_status "failed"
        and ExternalServiceError is raised. Nothing retries it automatically.
        """
        amount = payment.amount if amount is None else amount
        self.check_refund_eligibility(payment, amount)

        logger.info(f"💸 Refunding payment {payment.id}: {amount:.2f} {payment.currency}")
        payment.refund_attempted_at = self.clock()

        try:
            response = await self.gateway.refund(
                {"transactionId": payment.transaction_id, "amount": round(amount, 2), "reason": reason},
                idempotency_key=f"refund-{payment.transaction_id}",
            )
        except GatewayError as e:
            payment.refund_status = "failed"
            payment.refund_error = e.message
            payment.refund_reason = reason
            self.repo.save(self.db, payment)
            logger.error(f"❌ Refund for payment {payment.id} failed, flagged for review: {e.message}")
            self._audit(
                AuditAction.PROCESS_REFUND,
                AuditStatus.FAILURE,
                actor=actor,
                resource_id=payment.id,
                patient_id=payment.patient_id,
                error_message=e.message,
                metadata={"amount": amount},
            )
            raise ExternalServiceError(
                f"Refund failed: {e.message}", service="payment_gateway"
            ) from e

        payment.status = PaymentStatus.REFUNDED
        payment.refund_status = "completed"
        payment.refund_amount = round(amount, 2)
        payment.refund_reason = reason
        payment.refund_transaction_id = response.get("refundId")
        payment.refund_error = None
        payment.refunded_at = self.clock()
        if payment.appointment_id:
            self.repo.clear_appointment_review(self.db, payment.appointment_id)
        self.repo.save(self.db, payment)

        logger.info(f"✅ Payment {payment.id} refunded ({payment.refund_transaction_id})")
        self._audit(
            AuditAction.PROCESS_REFUND,
            AuditStatus.SUCCESS,
            actor=actor,
            resource_id=payment.id,
            patient_id=payment.patient_id,
            metadata={"amount": amount, "refund_id": payment.refund_transaction_id},
        )
        return payment

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_payment(self, payment_id: int, actor: User) -> Payment:
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found")
        if actor.role not in STAFF_ROLES and actor.id not in (payment.patient_id, payment.practitioner_id):
            raise AuthorizationError("You do not have access to this payment")
        return payment

    def get_by_appointment(self, appointment_id: int) -> Optional[Payment]:
        return self.repo.get_by_appointment(self.db, appointment_id)

    def get_refund_reviews(self) -> list[Payment]:
        return self.repo.get_refund_reviews(self.db)

    def get_analytics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict:
        """Payment counts by status and revenue by method"""
        by_status = {
            status: {"count": count, "amount": round(float(total), 2)}
            for status, count, total in self.repo.totals_by_status(self.db, start, end)
        }
        by_method = {
            method: {"count": count, "revenue": round(float(total), 2)}
            for method, count, total in self.repo.revenue_by_method(self.db, start, end)
        }
        total_payments = sum(entry["count"] for entry in by_status.values())
        completed = by_status.get(PaymentStatus.COMPLETED, {}).get("count", 0)

        return {
            "total_payments": total_payments,
            "total_revenue": round(sum(entry["revenue"] for entry in by_method.values()), 2),
            "total_refunded": round(self.repo.total_refunded(self.db, start, end), 2),
            "success_rate": round(completed / total_payments * 100, 2) if total_payments else 0.0,
            "by_status": by_status,
            "revenue_by_method": by_method,
        }
