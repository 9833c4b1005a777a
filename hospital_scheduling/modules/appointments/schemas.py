import uuid
from datetime import datetime, date
from pydantic import BaseModel, Field, model_validator
from hospital_scheduling.core.clock import to_local

class AppointmentOut(BaseModel):
    id: uuid.UUID
    hospital_id: uuid.UUID
    patient_id: uuid.UUID | None = None
    doctor_id: uuid.UUID
    department_id: uuid.UUID | None = None
    appointment_type: str | None = None
    reason_for_visit: str | None = None
    start_at: datetime
    end_at: datetime
    is_telemedicine: bool
    status: str
    buffer_rule_id: uuid.UUID | None = None
    buffer_before_minutes: int
    buffer_after_minutes: int
    cleanup_minutes: int
    series_id: uuid.UUID | None = None
    occurrence_date: date | None = None
    waitlist_entry_id: uuid.UUID | None = None
    rescheduled_to_id: uuid.UUID | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    class Config: from_attributes = True

class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)

class RescheduleRequest(BaseModel):
    start_at: datetime
    duration_minutes: int | None = Field(default=None, ge=5, le=24 * 60)  # keep the current length when omitted

    @model_validator(mode="after")
    def _naive_wall_clock(self):
        if self.start_at.tzinfo is not None:
            self.start_at = to_local(self.start_at)
        return self
