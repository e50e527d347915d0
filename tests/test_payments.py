"""Tests for payment validation, charging and refunds"""

import json

import httpx
import pytest

from hospital_booking.domain.payments.repository import PaymentRepository
from hospital_booking.domain.payments.schemas import PaymentData
from hospital_booking.errors import (
    AuthorizationError,
    BusinessLogicError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from hospital_booking.models_audit import AuditAction, AuditStatus
from hospital_booking.models_payment import Payment, PaymentStatus

from .conftest import NOW, VALID_CARD


def card_payment(amount=75.0, **card_overrides) -> PaymentData:
    return PaymentData(amount=amount, method="card", card_details={**VALID_CARD, **card_overrides})


class FraudStub:
    def __init__(self, result=None, error=None):
        self.result = result or {"riskScore": 10, "recommendation": "ALLOW"}
        self.error = error
        self.seen = []

    async def check_transaction(self, data):
        self.seen.append(data)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def completed_payment(db, patient, doctor):
    payment = Payment(
        patient_id=patient.id,
        practitioner_id=doctor.id,
        amount=100.0,
        currency="USD",
        method="card",
        status=PaymentStatus.COMPLETED,
        transaction_id="txn_existing",
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


class TestValidation:
    def test_valid_card(self, payment_service):
        payment_service.validate(card_payment())

    @pytest.mark.parametrize("amount", [0, -5, 10000.01])
    def test_amount_bounds(self, payment_service, amount):
        with pytest.raises(ValidationError):
            payment_service.validate(card_payment(amount=amount))

    def test_luhn_failure(self, payment_service):
        with pytest.raises(ValidationError, match="card number"):
            payment_service.validate(card_payment(card_number="4111111111111112"))

    def test_expired_card(self, payment_service):
        # Clock is January 2030
        with pytest.raises(ValidationError, match="expired"):
            payment_service.validate(card_payment(expiry_month=12, expiry_year=2029))

    def test_current_month_is_not_expired(self, payment_service):
        payment_service.validate(card_payment(expiry_month=1, expiry_year=30))

    @pytest.mark.parametrize("cvv", ["12", "12345", "abc"])
    def test_bad_cvv(self, payment_service, cvv):
        with pytest.raises(ValidationError, match="CVV"):
            payment_service.validate(card_payment(cvv=cvv))

    def test_unknown_method(self, payment_service):
        with pytest.raises(ValidationError, match="Invalid payment method"):
            payment_service.validate(PaymentData(amount=10, method="crypto"))

    def test_wallet_rules(self, payment_service):
        payment_service.validate(
            PaymentData(
                amount=10,
                method="digital_wallet",
                wallet_details={"wallet_type": "apple_pay", "wallet_id": "w-1"},
            )
        )
        with pytest.raises(ValidationError, match="wallet type"):
            payment_service.validate(
                PaymentData(
                    amount=10,
                    method="digital_wallet",
                    wallet_details={"wallet_type": "venmo", "wallet_id": "w-1"},
                )
            )

    def test_insurance_requires_details(self, payment_service):
        with pytest.raises(ValidationError):
            payment_service.validate(PaymentData(amount=10, method="insurance"))

    def test_masked_representation(self):
        masked = card_payment().masked()
        assert masked["card_details"]["card_number"] == "****-****-****-1111"
        assert masked["card_details"]["cvv"] == "***"


class TestCharge:
    async def test_successful_charge(self, payment_service, gateway_stub, audit):
        result = await payment_service.charge(card_payment(), {"patient_id": 1})

        assert result["status"] == PaymentStatus.COMPLETED
        assert result["transaction_id"].startswith("txn_")
        assert result["card_last4"] == "1111"

        request = gateway_stub.calls("/charges")[0]
        body = json.loads(request.content)
        assert body["amount"] == 75.0
        assert body["card"]["number"] == "4111111111111111"
        assert request.headers["Authorization"] == "Bearer test-key"
        assert request.headers["Idempotency-Key"]
        assert audit.events[-1].action == AuditAction.PROCESS_PAYMENT
        assert audit.events[-1].status == AuditStatus.SUCCESS

    async def test_decline_is_not_retried(self, payment_service, gateway_stub, sleeps):
        gateway_stub.charge_outcomes = [
            httpx.Response(402, json={"success": False, "declineReason": "Insufficient funds"})
        ]

        with pytest.raises(BusinessLogicError, match="Insufficient funds"):
            await payment_service.charge(card_payment())

        assert len(gateway_stub.calls("/charges")) == 1
        assert sleeps.delays == []

    async def test_success_false_body_is_a_decline(self, payment_service, gateway_stub):
        gateway_stub.charge_outcomes = [{"success": False, "declineReason": "Card blocked"}]

        with pytest.raises(BusinessLogicError, match="Card blocked"):
            await payment_service.charge(card_payment())

    async def test_transport_failures_retried_up_to_bound(
        self, payment_service, gateway_stub, sleeps
    ):
        gateway_stub.charge_outcomes = [503, httpx.ConnectError("refused"), 500]

        with pytest.raises(ExternalServiceError) as exc_info:
            await payment_service.charge(card_payment())

        assert len(gateway_stub.calls("/charges")) == 3
        assert sleeps.delays == [2.0, 4.0]
        assert exc_info.value.details == {"attempts": 3}

    async def test_recovers_after_transient_failure(self, payment_service, gateway_stub, sleeps):
        gateway_stub.charge_outcomes = [httpx.ReadTimeout("slow")]

        result = await payment_service.charge(card_payment())

        assert result["status"] == PaymentStatus.COMPLETED
        assert len(gateway_stub.calls("/charges")) == 2
        assert sleeps.delays == [2.0]
        # Every attempt carries the same idempotency key
        keys = {r.headers["Idempotency-Key"] for r in gateway_stub.calls("/charges")}
        assert len(keys) == 1

    async def test_max_attempts_override(self, payment_service, gateway_stub):
        gateway_stub.charge_outcomes = [503, 503]

        with pytest.raises(ExternalServiceError):
            await payment_service.charge(card_payment(), max_attempts=2)
        assert len(gateway_stub.calls("/charges")) == 2

    @pytest.mark.parametrize("method", ["cash", "bank_transfer"])
    async def test_offline_methods_skip_gateway(self, payment_service, gateway_stub, method):
        result = await payment_service.charge(PaymentData(amount=50, method=method))

        assert result["status"] == PaymentStatus.PENDING
        assert result["transaction_id"] is None
        assert gateway_stub.requests == []

    async def test_validation_happens_before_gateway(self, payment_service, gateway_stub):
        with pytest.raises(ValidationError):
            await payment_service.charge(card_payment(card_number="4111111111111112"))
        assert gateway_stub.requests == []


class TestFraud:
    async def test_high_score_blocks(self, db, payment_service, gateway_stub):
        payment_service.fraud_detector = FraudStub({"riskScore": 85, "recommendation": "REVIEW"})

        with pytest.raises(BusinessLogicError, match="fraud"):
            await payment_service.charge(card_payment())
        assert gateway_stub.requests == []

    async def test_block_recommendation_blocks(self, payment_service):
        payment_service.fraud_detector = FraudStub({"riskScore": 20, "recommendation": "BLOCK"})

        with pytest.raises(BusinessLogicError):
            await payment_service.charge(card_payment())

    async def test_elevated_score_only_warns(self, payment_service, caplog):
        payment_service.fraud_detector = FraudStub({"riskScore": 65, "recommendation": "REVIEW"})

        result = await payment_service.charge(card_payment())

        assert result["status"] == PaymentStatus.COMPLETED
        assert "Elevated fraud risk" in caplog.text

    async def test_detector_outage_does_not_block(self, payment_service):
        payment_service.fraud_detector = FraudStub(error=RuntimeError("detector down"))

        result = await payment_service.charge(card_payment())
        assert result["status"] == PaymentStatus.COMPLETED

    async def test_detector_never_sees_raw_card(self, payment_service):
        detector = FraudStub()
        payment_service.fraud_detector = detector

        await payment_service.charge(card_payment())

        assert detector.seen[0]["card_details"]["card_number"] == "****-****-****-1111"


class TestRefund:
    async def test_full_refund(self, payment_service, completed_payment, gateway_stub, audit):
        payment = await payment_service.refund(completed_payment, reason="Changed plans")

        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_status == "completed"
        assert payment.refund_amount == 100.0
        assert payment.refund_transaction_id.startswith("rf_")
        assert len(gateway_stub.calls("/refunds")) == 1
        assert audit.events[-1].action == AuditAction.PROCESS_REFUND

    async def test_partial_refund(self, payment_service, completed_payment):
        payment = await payment_service.refund(completed_payment, amount=40)
        assert payment.refund_amount == 40.0

    async def test_refund_above_original_rejected(
        self, payment_service, completed_payment, gateway_stub
    ):
        with pytest.raises(ValidationError, match="exceeds"):
            await payment_service.refund(completed_payment, amount=100.01)
        assert gateway_stub.requests == []

    async def test_zero_refund_rejected(self, payment_service, completed_payment):
        with pytest.raises(ValidationError):
            await payment_service.refund(completed_payment, amount=0)

    async def test_double_refund_rejected(self, payment_service, completed_payment, gateway_stub):
        await payment_service.refund(completed_payment)

        with pytest.raises(BusinessLogicError, match="already been refunded"):
            await payment_service.refund(completed_payment)
        assert len(gateway_stub.calls("/refunds")) == 1

    async def test_pending_payment_cannot_be_refunded(self, db, payment_service, patient):
        payment = Payment(patient_id=patient.id, amount=50, method="cash", status=PaymentStatus.PENDING)
        db.add(payment)
        db.commit()

        with pytest.raises(BusinessLogicError):
            await payment_service.refund(payment)

    async def test_settled_hospital_payment_is_not_refunded_through_gateway(
        self, db, payment_service, patient, staff, gateway_stub
    ):
        payment = Payment(patient_id=patient.id, amount=50, method="cash", status=PaymentStatus.PENDING)
        db.add(payment)
        db.commit()
        payment_service.settle_offline(payment, staff, "RCPT-7")

        with pytest.raises(BusinessLogicError, match="hospital desk"):
            await payment_service.refund(payment)
        assert gateway_stub.requests == []

    async def test_failed_refund_is_flagged_not_retried(
        self, db, payment_service, completed_payment, gateway_stub, sleeps
    ):
        gateway_stub.refund_outcomes = [503]

        with pytest.raises(ExternalServiceError):
            await payment_service.refund(completed_payment)

        db.refresh(completed_payment)
        assert completed_payment.status == PaymentStatus.COMPLETED
        assert completed_payment.refund_status == "failed"
        assert completed_payment.refund_error
        assert len(gateway_stub.calls("/refunds")) == 1
        assert sleeps.delays == []
        assert payment_service.get_refund_reviews() == [completed_payment]


class TestSettleOffline:
    @pytest.fixture
    def cash_payment(self, db, patient):
        payment = Payment(patient_id=patient.id, amount=75, method="cash", status=PaymentStatus.PENDING)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    def test_staff_settle_pending_cash(self, payment_service, cash_payment, staff):
        payment = payment_service.settle_offline(cash_payment, staff, "RCPT-1")

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.transaction_id == "RCPT-1"
        assert payment.gateway_status == "settled_at_hospital"

    def test_only_staff_settle(self, payment_service, cash_payment, patient):
        with pytest.raises(AuthorizationError):
            payment_service.settle_offline(cash_payment, patient)

    def test_settlement_lost_to_concurrent_desk(
        self, session_factory, payment_service, cash_payment, staff
    ):
        assert cash_payment.status == PaymentStatus.PENDING
        other_desk = session_factory()
        try:
            assert PaymentRepository.settle_offline(other_desk, cash_payment.id, "RCPT-OTHER", NOW)
        finally:
            other_desk.close()

        with pytest.raises(ConflictError):
            payment_service.settle_offline(cash_payment, staff, "RCPT-2")


class TestQueries:
    def test_get_payment_access(self, payment_service, completed_payment, patient, other_patient, staff):
        assert payment_service.get_payment(completed_payment.id, patient) is completed_payment
        assert payment_service.get_payment(completed_payment.id, staff) is completed_payment

        with pytest.raises(AuthorizationError):
            payment_service.get_payment(completed_payment.id, other_patient)
        with pytest.raises(NotFoundError):
            payment_service.get_payment(999, staff)

    async def test_analytics(self, db, payment_service, patient, completed_payment):
        db.add_all(
            [
                Payment(patient_id=patient.id, amount=50, method="cash", status=PaymentStatus.PENDING),
                Payment(
                    patient_id=patient.id,
                    amount=30,
                    method="digital_wallet",
                    status=PaymentStatus.COMPLETED,
                    transaction_id="txn_wallet",
                ),
            ]
        )
        db.commit()
        await payment_service.refund(completed_payment, amount=100)

        analytics = payment_service.get_analytics()

        assert analytics["total_payments"] == 3
        assert analytics["by_status"][PaymentStatus.REFUNDED]["count"] == 1
        assert analytics["revenue_by_method"] == {"digital_wallet": {"count": 1, "revenue": 30.0}}
        assert analytics["total_refunded"] == 100.0
