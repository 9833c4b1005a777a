import uuid
from datetime import date
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Date, UniqueConstraint
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

# Scope columns all null => hospital-wide rule
class AppointmentBufferRule(Base, TimestampedTenantMixin):
    doctor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    appointment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    department_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    buffer_before_minutes: Mapped[int] = mapped_column(Integer, default=0)
    buffer_after_minutes: Mapped[int] = mapped_column(Integer, default=0)
    cleanup_time_minutes: Mapped[int] = mapped_column(Integer, default=0)
    max_consecutive_appointments: Mapped[int | None] = mapped_column(Integer, nullable=True)
    required_break_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

# Holiday / closure day; doctor_id null closes the whole hospital
class ScheduleClosure(Base, TimestampedTenantMixin):
    closure_date: Mapped[date] = mapped_column(Date, index=True)
    doctor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(String(200), nullable=True)

# Versioned booking ledger per (doctor|resource, date); every booking change bumps `version`
class SchedulingLedger(Base, TimestampedTenantMixin):
    __table_args__ = (
        UniqueConstraint("hospital_id", "scope", "subject_id", "ledger_date", name="uq_schedulingledger_key"),
    )

    scope: Mapped[str] = mapped_column(String(16))  # doctor | resource
    subject_id: Mapped[uuid.UUID] = mapped_column()
    ledger_date: Mapped[date] = mapped_column(Date)
