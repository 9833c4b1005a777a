import re
import uuid
from datetime import date, datetime
from typing import Literal
from pydantic import BaseModel, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

class WaitlistCreate(BaseModel):
    patient_id: uuid.UUID
    doctor_id: uuid.UUID | None = None
    department_id: uuid.UUID | None = None
    preferred_date_start: date | None = None
    preferred_date_end: date | None = None
    preferred_times: list[str] = []
    appointment_type: str | None = None
    reason_for_visit: str | None = None
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    urgency_level: int = Field(default=3, ge=1, le=5)
    contact_method: Literal["phone", "email", "sms", "portal"] = "phone"
    auto_book: bool = False
    max_notice_hours: int = Field(default=24, ge=1, le=24 * 30)

    @field_validator("preferred_times")
    @classmethod
    def _hhmm(cls, v: list[str]):
        bad = [t for t in v if not _HHMM.match(t)]
        if bad:
            raise ValueError(f"preferred_times must be HH:MM, got {bad}")
        return sorted(set(v))

    @model_validator(mode="after")
    def _date_range(self):
        if self.preferred_date_start and self.preferred_date_end and self.preferred_date_end < self.preferred_date_start:
            raise ValueError("preferred_date_end must not be before preferred_date_start")
        return self

class WaitlistOut(BaseModel):
    id: uuid.UUID
    hospital_id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID | None = None
    department_id: uuid.UUID | None = None
    preferred_date_start: date | None = None
    preferred_date_end: date | None = None
    preferred_times: list[str] = []
    appointment_type: str | None = None
    priority: str
    urgency_level: int
    contact_method: str
    auto_book: bool
    max_notice_hours: int
    status: str
    notified_at: datetime | None = None
    expires_at: datetime | None = None
    offered_slot_id: uuid.UUID | None = None
    booked_appointment_id: uuid.UUID | None = None
    created_at: datetime
    class Config: from_attributes = True

class WaitlistMatchOut(BaseModel):
    entry_id: uuid.UUID
    slot_id: uuid.UUID
    outcome: Literal["booked", "notified"]
    appointment_id: uuid.UUID | None = None
    expires_at: datetime | None = None

class SweepOut(BaseModel):
    expired_offers: int
    expired_entries: int
    reoffered: int
