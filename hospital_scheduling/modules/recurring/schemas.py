import uuid
from datetime import date, time, datetime
from typing import Literal
from pydantic import BaseModel, Field, model_validator
from hospital_scheduling.modules.recurring.patterns import series_error
from hospital_scheduling.modules.scheduling.schemas import SchedulingConflict

class SeriesCreate(BaseModel):
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    department_id: uuid.UUID | None = None
    appointment_type: str | None = None
    reason_for_visit: str | None = None
    pattern_type: Literal["daily", "weekly", "monthly", "yearly"]
    interval_value: int = Field(default=1, ge=1, le=52)
    days_of_week: list[int] = []
    day_of_month: int | None = None
    preferred_time: time
    duration_minutes: int = Field(default=30, ge=5, le=24 * 60)
    required_resource_ids: list[uuid.UUID] = []
    series_start_date: date
    series_end_date: date | None = None
    max_occurrences: int | None = None

    @model_validator(mode="after")
    def _valid_pattern(self):
        err = series_error(
            self.pattern_type, self.interval_value, self.series_start_date, self.series_end_date,
            days_of_week=self.days_of_week, day_of_month=self.day_of_month, max_occurrences=self.max_occurrences,
        )
        if err:
            raise ValueError(err)
        return self

class SeriesOut(BaseModel):
    id: uuid.UUID
    hospital_id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    appointment_type: str | None = None
    pattern_type: str
    interval_value: int
    days_of_week: list[int] = []
    day_of_month: int | None = None
    preferred_time: time
    duration_minutes: int
    required_resource_ids: list[uuid.UUID] = []
    series_start_date: date
    series_end_date: date | None = None
    max_occurrences: int | None = None
    occurrences_generated: int
    status: str
    last_generated_date: date | None = None
    class Config: from_attributes = True

class AppointmentDraft(BaseModel):
    occurrence_date: date
    start_at: datetime
    end_at: datetime
    status: Literal["booked", "skipped-conflict"]
    appointment_id: uuid.UUID | None = None
    conflicts: list[SchedulingConflict] = []

class ExpandRequest(BaseModel):
    horizon_date: date | None = None  # defaults to today + RECURRING_HORIZON_DAYS

class SeriesCancel(BaseModel):
    reason: str | None = None
