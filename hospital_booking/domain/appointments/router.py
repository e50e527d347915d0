"""Appointments router - FastAPI endpoints for booking and lifecycle"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import STAFF_ROLES, get_current_user, get_request_info, require_roles
from ...database import get_db
from ...models import User
from ...shared.responses import success
from ..payments.schemas import PaymentResponse
from .schemas import (
    AppointmentCreate,
    AppointmentResponse,
    BookingResponse,
    CancelRequest,
    FeeQuote,
    HospitalPaymentRequest,
    RescheduleRequest,
)
from .service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

require_staff = require_roles(*STAFF_ROLES)


def get_appointment_service(db: Session = Depends(get_db)) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db)


@router.post("", status_code=201)
async def create_appointment(
    body: AppointmentCreate,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    """Reserve a slot, take payment and book the appointment"""
    appointment, payment = await service.create_appointment(body, user, request_info)
    return success(
        "Appointment booked",
        BookingResponse(
            appointment=AppointmentResponse.model_validate(appointment),
            payment=PaymentResponse.model_validate(payment),
        ),
    )


@router.get("/fee")
async def quote_fee(
    practitioner_id: int = Query(...),
    duration: int = Query(30),
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Fee for an appointment of a given length with a practitioner"""
    return success("Fee calculated", FeeQuote(**service.quote_fee(practitioner_id, duration)))


@router.get("/mine")
async def list_my_appointments(
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Appointments of the current patient"""
    appointments = service.list_patient_appointments(user.id, user, status)
    return success(
        f"{len(appointments)} appointments",
        [AppointmentResponse.model_validate(a) for a in appointments],
    )


@router.get("/patient/{patient_id}")
async def list_patient_appointments(
    patient_id: int,
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Appointments of a patient (the patient themselves or staff)"""
    appointments = service.list_patient_appointments(patient_id, user, status)
    return success(
        f"{len(appointments)} appointments",
        [AppointmentResponse.model_validate(a) for a in appointments],
    )


@router.get("/practitioner/{practitioner_id}")
async def list_practitioner_appointments(
    practitioner_id: int,
    status: Optional[str] = Query(None, description="Comma separated statuses"),
    on_date: Optional[date] = Query(None, alias="date"),
    limit: int = Query(50),
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """A practitioner's appointments (the practitioner themselves or staff)"""
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    appointments = service.list_practitioner_appointments(
        practitioner_id, user, statuses, on_date, limit
    )
    return success(
        f"{len(appointments)} appointments",
        [AppointmentResponse.model_validate(a) for a in appointments],
    )


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = service.get_appointment(appointment_id, user)
    return success("Appointment retrieved", AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/reschedule")
async def reschedule_appointment(
    appointment_id: int,
    body: RescheduleRequest,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    """Move an appointment to another slot"""
    appointment = await service.reschedule_appointment(appointment_id, body, user, request_info)
    return success("Appointment rescheduled", AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: int,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    """Cancel an appointment; the refund outcome is reported alongside"""
    result = await service.cancel_appointment(appointment_id, user, body.reason, request_info)
    message = "Appointment cancelled"
    if result["refund"]["status"] == "failed":
        message = "Appointment cancelled, refund pending manual review"
    return success(
        message,
        {
            "appointment": AppointmentResponse.model_validate(result["appointment"]),
            "refund": result["refund"],
        },
    )


@router.post("/{appointment_id}/confirm")
async def confirm_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    appointment = service.confirm_appointment(appointment_id, user, request_info)
    return success("Appointment confirmed", AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/complete")
async def complete_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    appointment = service.complete_appointment(appointment_id, user, request_info)
    return success("Appointment completed", AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/hospital-payment")
async def record_hospital_payment(
    appointment_id: int,
    body: HospitalPaymentRequest,
    user: User = Depends(require_staff),
    service: AppointmentService = Depends(get_appointment_service),
    request_info: dict = Depends(get_request_info),
):
    """Staff record a cash or bank transfer payment taken at the hospital"""
    payment = service.record_hospital_payment(
        appointment_id, user, body.transaction_id, request_info
    )
    return success("Payment processed successfully", PaymentResponse.model_validate(payment))
