"""Payments router - FastAPI endpoints for payments and refunds"""

import logging
from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import STAFF_ROLES, get_current_user, require_roles
from ...database import get_db
from ...models import User
from ...shared.responses import success
from .schemas import PaymentResponse, RefundRequest
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

require_staff = require_roles(*STAFF_ROLES)


def get_payment_service(db: Session = Depends(get_db)) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db)


@router.get("/refund-reviews")
async def get_refund_reviews(
    user: User = Depends(require_staff),
    service: PaymentService = Depends(get_payment_service),
):
    """Payments whose refund failed and need manual reconciliation"""
    payments = service.get_refund_reviews()
    return success(
        f"{len(payments)} refunds awaiting review",
        [PaymentResponse.model_validate(payment) for payment in payments],
    )


@router.get("/analytics")
async def get_payment_analytics(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    user: User = Depends(require_roles("manager", "admin")),
    service: PaymentService = Depends(get_payment_service),
):
    """Totals by status and revenue by method"""
    start = datetime.combine(start_date, time.min) if start_date else None
    end = datetime.combine(end_date, time.max) if end_date else None
    return success("Payment analytics", service.get_analytics(start, end))


@router.get("/{payment_id}")
async def get_payment(
    payment_id: int,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Get a payment visible to the current user"""
    payment = service.get_payment(payment_id, user)
    return success("Payment retrieved", PaymentResponse.model_validate(payment))


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    user: User = Depends(require_staff),
    service: PaymentService = Depends(get_payment_service),
):
    """Manually refund a completed payment (single gateway attempt)"""
    payment = service.get_payment(payment_id, user)
    payment = await service.refund(payment, body.amount, body.reason, actor=user)
    return success("Payment refunded", PaymentResponse.model_validate(payment))
