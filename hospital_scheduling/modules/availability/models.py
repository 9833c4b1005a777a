import uuid
from datetime import date, time, datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Date, Time, ForeignKey, UniqueConstraint, Index
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

# Weekly recurring window: day_of_week 0=Sun..6=Sat, wall-clock times in HOSPITAL_TIMEZONE
class AvailabilityWindow(Base, TimestampedTenantMixin):
    doctor_id: Mapped[uuid.UUID] = mapped_column(index=True)
    day_of_week: Mapped[int] = mapped_column(Integer)  # 0..6
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    is_telemedicine: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

# Concrete bookable unit; only free slots are ever regenerated
class TimeSlot(Base, TimestampedTenantMixin):
    __table_args__ = (
        UniqueConstraint("hospital_id", "doctor_id", "slot_date", "start_time", name="uq_timeslot_doctor_start"),
        Index("ix_timeslot_doctor_date", "hospital_id", "doctor_id", "slot_date"),
    )

    doctor_id: Mapped[uuid.UUID] = mapped_column()
    slot_date: Mapped[date] = mapped_column(Date)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    is_telemedicine: Mapped[bool] = mapped_column(Boolean, default=False)
    state: Mapped[str] = mapped_column(String(16), default="free")  # free | booked
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("appointment.id"), nullable=True, index=True)

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.end_time)
