import uuid
from datetime import datetime, date, timedelta
from typing import Literal
from pydantic import BaseModel, Field, model_validator
from hospital_scheduling.core.clock import to_local

ConflictType = Literal["doctor_unavailable", "resource_conflict", "buffer_violation", "holiday"]

class BookingRequest(BaseModel):
    patient_id: uuid.UUID | None = None
    doctor_id: uuid.UUID
    appointment_type: str | None = None
    department_id: uuid.UUID | None = None
    start_at: datetime  # hospital wall-clock time
    duration_minutes: int = Field(ge=5, le=24 * 60)
    required_resources: list[uuid.UUID] = []
    preferred_resources: list[uuid.UUID] = []
    reason_for_visit: str | None = None
    booked_by: uuid.UUID | None = None

    # set by internal callers
    series_id: uuid.UUID | None = None
    occurrence_date: date | None = None
    waitlist_entry_id: uuid.UUID | None = None
    replaces_appointment_id: uuid.UUID | None = None

    @model_validator(mode="after")
    def _naive_wall_clock(self):
        if self.start_at.tzinfo is not None:
            self.start_at = to_local(self.start_at)
        return self

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)

class SchedulingConflict(BaseModel):
    type: ConflictType
    description: str
    conflicting_appointment_id: uuid.UUID | None = None
    conflicting_booking_id: uuid.UUID | None = None
    resource_id: uuid.UUID | None = None

class ReservedResource(BaseModel):
    resource_id: uuid.UUID
    booking_id: uuid.UUID
    status: str

class Reservation(BaseModel):
    appointment_id: uuid.UUID
    doctor_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    slot_ids: list[uuid.UUID]
    resources: list[ReservedResource] = []
    skipped_preferred_resources: list[uuid.UUID] = []
    released_slot_ids: list[uuid.UUID] = []
    buffer_rule_id: uuid.UUID | None = None

class ConflictReport(BaseModel):
    conflicts: list[SchedulingConflict]

# ---- Buffer rules ----

class BufferRuleCreate(BaseModel):
    doctor_id: uuid.UUID | None = None
    appointment_type: str | None = None
    department_id: uuid.UUID | None = None
    buffer_before_minutes: int = Field(default=0, ge=0, le=240)
    buffer_after_minutes: int = Field(default=0, ge=0, le=240)
    cleanup_time_minutes: int = Field(default=0, ge=0, le=240)
    max_consecutive_appointments: int | None = Field(default=None, ge=1)
    required_break_minutes: int | None = Field(default=None, ge=0, le=480)
    priority: int = 0
    is_active: bool = True

class BufferRuleOut(BufferRuleCreate):
    id: uuid.UUID
    hospital_id: uuid.UUID
    class Config: from_attributes = True

# ---- Closures ----

class ClosureCreate(BaseModel):
    closure_date: date
    doctor_id: uuid.UUID | None = None
    reason: str | None = None

class ClosureOut(ClosureCreate):
    id: uuid.UUID
    hospital_id: uuid.UUID
    class Config: from_attributes = True
