import uuid
from datetime import date, time, datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Date, Time, JSON, TIMESTAMP
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

class RecurringAppointment(Base, TimestampedTenantMixin):
    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    doctor_id: Mapped[uuid.UUID] = mapped_column(index=True)
    department_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    appointment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason_for_visit: Mapped[str | None] = mapped_column(String(300), nullable=True)

    pattern_type: Mapped[str] = mapped_column(String(8))  # daily | weekly | monthly | yearly
    interval_value: Mapped[int] = mapped_column(Integer, default=1)
    days_of_week: Mapped[list] = mapped_column(JSON, default=list)  # weekly only, 0=Sun..6=Sat
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)  # monthly only
    preferred_time: Mapped[time] = mapped_column(Time)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    required_resource_ids: Mapped[list] = mapped_column(JSON, default=list)

    series_start_date: Mapped[date] = mapped_column(Date)
    series_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    max_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurrences_generated: Mapped[int] = mapped_column(Integer, default=0)  # booked + skipped

    status: Mapped[str] = mapped_column(String(16), default="active")  # active | paused | completed | cancelled
    last_generated_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expansion_lease_until: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
