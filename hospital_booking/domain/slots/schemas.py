"""Slot domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ...models import BLOCK_REASONS, SlotType
from ...shared.validators import normalize_time

MAX_RECURRING_OCCURRENCES = 366


class SlotCreate(BaseModel):
    """Schema for creating a single slot"""

    date: date
    start_time: str
    end_time: str
    duration: Optional[int] = None  # minutes, derived from the window when omitted
    max_patients: int = 1
    slot_type: str = SlotType.REGULAR
    instructions: Optional[str] = None
    room: Optional[str] = None
    building: Optional[str] = None
    floor: Optional[str] = None
    department: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return normalize_time(v)

    @field_validator("max_patients")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_patients must be at least 1")
        return v

    @field_validator("slot_type")
    @classmethod
    def validate_slot_type(cls, v: str) -> str:
        v = (v or SlotType.REGULAR).upper()
        if v not in SlotType.ALL:
            raise ValueError(f"slot_type must be one of {', '.join(SlotType.ALL)}")
        return v

    @field_validator("instructions")
    @classmethod
    def validate_instructions(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) > 300:
            raise ValueError("Instructions cannot exceed 300 characters")
        return v


class RecurringPattern(BaseModel):
    """How a slot template repeats"""

    frequency: str  # DAILY, WEEKLY, MONTHLY
    interval: int = 1
    days_of_week: list[int] = []  # 0=Monday .. 6=Sunday, WEEKLY only
    end_date: Optional[date] = None
    occurrences: Optional[int] = None
    exceptions: list[date] = []

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        v = (v or "").upper()
        if v not in {"DAILY", "WEEKLY", "MONTHLY"}:
            raise ValueError("frequency must be DAILY, WEEKLY or MONTHLY")
        return v

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("interval must be at least 1")
        return v

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("days_of_week values must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.end_date is None and self.occurrences is None:
            raise ValueError("Either end_date or occurrences is required")
        if self.occurrences is not None and not 1 <= self.occurrences <= MAX_RECURRING_OCCURRENCES:
            raise ValueError(f"occurrences must be between 1 and {MAX_RECURRING_OCCURRENCES}")
        return self


class RecurringSlotCreate(SlotCreate):
    """Slot template plus recurrence; `date` is the first candidate day"""

    recurring_pattern: RecurringPattern

    @model_validator(mode="after")
    def validate_range(self):
        end_date = self.recurring_pattern.end_date
        if end_date is not None and end_date < self.date:
            raise ValueError("end_date must not be before the start date")
        return self


class BlockSlotsRequest(BaseModel):
    slot_ids: list[int]
    reason: str
    description: Optional[str] = None

    @field_validator("slot_ids")
    @classmethod
    def validate_ids(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("At least one slot id is required")
        return v

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = (v or "").upper()
        if v not in BLOCK_REASONS:
            raise ValueError(f"reason must be one of {', '.join(BLOCK_REASONS)}")
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) > 200:
            raise ValueError("Description cannot exceed 200 characters")
        return v


class UnblockSlotsRequest(BaseModel):
    slot_ids: list[int]

    @field_validator("slot_ids")
    @classmethod
    def validate_ids(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("At least one slot id is required")
        return v


class QuickBlockRequest(BaseModel):
    """Block every available slot overlapping a time range"""

    date: date
    start_time: str
    end_time: str
    reason: str
    description: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return normalize_time(v)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = (v or "").upper()
        if v not in BLOCK_REASONS:
            raise ValueError(f"reason must be one of {', '.join(BLOCK_REASONS)}")
        return v


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    public_id: str
    practitioner_id: int
    date: date
    start_time: str
    end_time: str
    duration: int
    max_patients: int
    current_bookings: int
    available_spots: int
    status: str
    slot_type: str
    is_recurring: bool
    block_reason: Optional[str] = None
    block_description: Optional[str] = None
    blocked_by: Optional[int] = None
    instructions: Optional[str] = None
    room: Optional[str] = None
    department: Optional[str] = None
    created_at: Optional[datetime] = None


class AvailableSlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    start_time: str
    end_time: str
    duration: int
    slot_type: str
    max_patients: int
    current_bookings: int
    available_spots: int
