import uuid
from datetime import date, time
from pydantic import BaseModel, Field, model_validator

def window_error(start: time, end: time, slot_minutes: int) -> str | None:
    if slot_minutes <= 0:
        return "slot_duration_minutes must be positive"
    if start >= end:
        return "start_time must be before end_time"
    span = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
    if span < slot_minutes:
        return "window is shorter than one slot"
    return None

class WindowCreate(BaseModel):
    doctor_id: uuid.UUID
    day_of_week: int = Field(ge=0, le=6)  # 0=Sunday
    start_time: time
    end_time: time
    slot_duration_minutes: int = Field(default=30, ge=5, le=240)
    is_telemedicine: bool = False
    is_active: bool = True

    @model_validator(mode="after")
    def _check_bounds(self):
        err = window_error(self.start_time, self.end_time, self.slot_duration_minutes)
        if err: raise ValueError(err)
        return self

class WindowOut(WindowCreate):
    id: uuid.UUID
    hospital_id: uuid.UUID
    class Config: from_attributes = True

class SlotGenerateRequest(BaseModel):
    doctor_id: uuid.UUID
    slot_date: date

class SlotOut(BaseModel):
    id: uuid.UUID
    doctor_id: uuid.UUID
    slot_date: date
    start_time: time
    end_time: time
    is_telemedicine: bool
    state: str
    appointment_id: uuid.UUID | None
    class Config: from_attributes = True

class SlotGenerationOut(BaseModel):
    doctor_id: uuid.UUID
    slot_date: date
    created: int
    removed: int
    slots: list[SlotOut]
