import uuid
from datetime import datetime, date
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Date, JSON, TIMESTAMP, ForeignKey, UniqueConstraint, Index
from hospital_scheduling.core.base import Base, TimestampedTenantMixin

class AppointmentWaitlist(Base, TimestampedTenantMixin):
    __table_args__ = (Index("ix_appointmentwaitlist_status", "hospital_id", "status"),)

    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    doctor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    department_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    preferred_date_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    preferred_date_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    preferred_times: Mapped[list] = mapped_column(JSON, default=list)  # ["09:00", "14:30"]; empty = any time
    appointment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason_for_visit: Mapped[str | None] = mapped_column(String(300), nullable=True)

    priority: Mapped[str] = mapped_column(String(8), default="normal")  # low | normal | high | urgent
    urgency_level: Mapped[int] = mapped_column(Integer, default=3)  # 1..5
    contact_method: Mapped[str] = mapped_column(String(8), default="phone")  # phone | email | sms | portal
    auto_book: Mapped[bool] = mapped_column(Boolean, default=False)
    max_notice_hours: Mapped[int] = mapped_column(Integer, default=24)

    status: Mapped[str] = mapped_column(String(16), default="active")  # active | notified | booked | expired | cancelled
    notified_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    offered_slot_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    booked_appointment_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

# One row per (entry, slot) ever offered; the unique key keeps a slot from being re-offered to the same entry
class WaitlistOffer(Base, TimestampedTenantMixin):
    __table_args__ = (UniqueConstraint("entry_id", "slot_id", name="uq_waitlistoffer_entry_slot"),)

    entry_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("appointmentwaitlist.id"), index=True)
    slot_id: Mapped[uuid.UUID] = mapped_column(index=True)
    status: Mapped[str] = mapped_column(String(16), default="offered")  # offered | accepted | declined | expired | superseded
    offered_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
