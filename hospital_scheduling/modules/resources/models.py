import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, TIMESTAMP, ForeignKey, Index
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

class HospitalResource(Base, TimestampedTenantMixin):
    name: Mapped[str] = mapped_column(String(120))
    resource_type: Mapped[str] = mapped_column(String(16))  # room | equipment | vehicle
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor: Mapped[str | None] = mapped_column(String(32), nullable=True)
    wing: Mapped[str | None] = mapped_column(String(32), nullable=True)
    booking_buffer_minutes: Mapped[int] = mapped_column(Integer, default=0)
    max_booking_duration_hours: Mapped[int] = mapped_column(Integer, default=8)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

# Owned by the appointment that created it; start/end are hospital wall-clock times
class ResourceBooking(Base, TimestampedTenantMixin):
    __table_args__ = (Index("ix_resourcebooking_resource_start", "hospital_id", "resource_id", "start_at"),)

    resource_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("hospitalresource.id"))
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("appointment.id"), nullable=True, index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime)
    end_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(16), default="confirmed")  # pending | confirmed | cancelled
    purpose: Mapped[str | None] = mapped_column(String(200), nullable=True)
    booked_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    approved_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
