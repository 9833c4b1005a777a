import uuid
from datetime import datetime
from pydantic import BaseModel, Field

class ResourceCreate(BaseModel):
    name: str
    resource_type: str = Field(..., pattern="^(room|equipment|vehicle)$")
    capacity: int | None = Field(default=None, ge=1)
    floor: str | None = None
    wing: str | None = None
    booking_buffer_minutes: int = Field(default=0, ge=0, le=240)
    max_booking_duration_hours: int = Field(default=8, ge=1, le=72)
    requires_approval: bool = False
    is_active: bool = True

class ResourceOut(ResourceCreate):
    id: uuid.UUID
    hospital_id: uuid.UUID
    class Config: from_attributes = True

class ResourceBookingOut(BaseModel):
    id: uuid.UUID
    resource_id: uuid.UUID
    appointment_id: uuid.UUID | None
    start_at: datetime
    end_at: datetime
    status: str
    purpose: str | None
    booked_by: uuid.UUID | None
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    class Config: from_attributes = True

class ResourceBookingAction(BaseModel):
    reason: str | None = None
