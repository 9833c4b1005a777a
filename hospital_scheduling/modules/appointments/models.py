import uuid
from datetime import datetime, date
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Date, DateTime, TIMESTAMP, Index, UniqueConstraint
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

class Appointment(Base, TimestampedTenantMixin):
    __table_args__ = (
        Index("ix_appointment_doctor_start", "hospital_id", "doctor_id", "start_at"),
        # one materialised appointment per series occurrence
        UniqueConstraint("series_id", "occurrence_date", name="uq_appointment_series_occurrence"),
    )

    patient_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    doctor_id: Mapped[uuid.UUID] = mapped_column()
    department_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    appointment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason_for_visit: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # hospital wall-clock times, same frame as TimeSlot
    start_at: Mapped[datetime] = mapped_column(DateTime)
    end_at: Mapped[datetime] = mapped_column(DateTime)
    is_telemedicine: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(24), default="confirmed")  # confirmed, cancelled, rescheduled, completed, no_show

    # buffer snapshot of the rule applied at booking time
    buffer_rule_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    buffer_before_minutes: Mapped[int] = mapped_column(Integer, default=0)
    buffer_after_minutes: Mapped[int] = mapped_column(Integer, default=0)
    cleanup_minutes: Mapped[int] = mapped_column(Integer, default=0)

    # provenance
    series_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    occurrence_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    waitlist_entry_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    rescheduled_to_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    booked_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
