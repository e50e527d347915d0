"""Slots router - FastAPI endpoints for practitioner availability"""

import logging
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user, get_request_info, require_roles
from ...database import get_db
from ...models import User
from ...shared.responses import success
from .schemas import (
    AvailableSlotResponse,
    BlockSlotsRequest,
    QuickBlockRequest,
    RecurringSlotCreate,
    SlotCreate,
    SlotResponse,
    UnblockSlotsRequest,
)
from .service import SlotService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slots", tags=["Slots"])

require_doctor = require_roles("doctor")


def get_slot_service(db: Session = Depends(get_db)) -> SlotService:
    """Dependency injection for SlotService"""
    return SlotService(db)


def _slots(slots) -> list[SlotResponse]:
    return [SlotResponse.model_validate(slot) for slot in slots]


# ============================================================================
# CREATION
# ============================================================================


@router.post("", status_code=201)
async def create_slot(
    body: SlotCreate,
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Create a single slot for the current practitioner"""
    slot = service.create_slot(user.id, body, request_info)
    return success("Slot created", SlotResponse.model_validate(slot))


@router.post("/recurring", status_code=201)
async def create_recurring_slots(
    body: RecurringSlotCreate,
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Create slots from a recurrence pattern; failures are reported per date"""
    result = service.create_recurring_slots(user.id, body, request_info)
    return success(
        f"{len(result['created'])} slots created, {len(result['failed'])} failed",
        {
            "created": _slots(result["created"]),
            "failed": result["failed"],
            "recurrence_group": result["recurrence_group"],
        },
    )


@router.get("/conflicts")
async def check_conflicts(
    slot_date: date = Query(..., alias="date"),
    start_time: str = Query(...),
    end_time: str = Query(...),
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
):
    """Existing slots of the current practitioner overlapping a window"""
    conflicts = service.get_conflicts(user.id, slot_date, start_time, end_time)
    return success(
        "Conflicts found" if conflicts else "No conflicts",
        {"has_conflicts": bool(conflicts), "conflicts": _slots(conflicts)},
    )


# ============================================================================
# QUERIES
# ============================================================================


@router.get("/today")
async def get_today_schedule(
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Today's slots for the current practitioner"""
    schedule = service.get_today_schedule(user, request_info)
    return success(
        "Today's schedule",
        {"date": schedule["date"], "slots": _slots(schedule["slots"]), "summary": schedule["summary"]},
    )


@router.get("/practitioner/{practitioner_id}/available")
async def get_available_slots(
    practitioner_id: int,
    slot_date: date = Query(..., alias="date"),
    user: User = Depends(get_current_user),
    service: SlotService = Depends(get_slot_service),
):
    """Slots a patient can book on a date"""
    slots = service.get_available_slots(practitioner_id, slot_date)
    return success(
        f"{len(slots)} available slots",
        [AvailableSlotResponse.model_validate(slot) for slot in slots],
    )


@router.get("/practitioner/{practitioner_id}/availability")
async def get_doctor_availability(
    practitioner_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    user: User = Depends(get_current_user),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """All slots in a date range with a summary"""
    result = service.get_doctor_availability(
        practitioner_id, start_date, end_date, user, request_info
    )
    return success(
        "Availability retrieved",
        {"slots": _slots(result["slots"]), "summary": result["summary"]},
    )


# ============================================================================
# BLOCKING
# ============================================================================


@router.post("/block")
async def block_slots(
    body: BlockSlotsRequest,
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Block open slots of the current practitioner"""
    result = service.block_slots(body.slot_ids, user, body.reason, body.description, request_info)
    return success(
        f"{len(result['blocked'])} slots blocked",
        {"blocked": _slots(result["blocked"]), "errors": result["errors"]},
    )


@router.post("/unblock")
async def unblock_slots(
    body: UnblockSlotsRequest,
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Reopen blocked slots of the current practitioner"""
    result = service.unblock_slots(body.slot_ids, user, request_info)
    return success(
        f"{len(result['unblocked'])} slots unblocked",
        {"unblocked": _slots(result["unblocked"]), "errors": result["errors"]},
    )


@router.post("/quick-block")
async def quick_block(
    body: QuickBlockRequest,
    user: User = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service),
    request_info: dict = Depends(get_request_info),
):
    """Block every open slot overlapping a time range"""
    result = service.quick_block(user, body, request_info)
    return success(
        f"{len(result['blocked'])} slots blocked",
        {"blocked": _slots(result["blocked"]), "errors": result["errors"]},
    )
