import uuid
from datetime import date
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete
from hospital_scheduling.modules.availability.models import AvailabilityWindow, TimeSlot

class AvailabilityRepository:
    def __init__(self, s: AsyncSession): self.s = s

    # windows
    async def create_window(self, hospital: uuid.UUID, **data) -> AvailabilityWindow:
        obj = AvailabilityWindow(hospital_id=hospital, **data); self.s.add(obj); await self.s.flush(); return obj

    async def get_window(self, hospital: uuid.UUID, window_id: uuid.UUID) -> AvailabilityWindow | None:
        res = await self.s.execute(select(AvailabilityWindow).where(
            AvailabilityWindow.hospital_id==hospital, AvailabilityWindow.id==window_id, AvailabilityWindow.deleted_at.is_(None)
        ))
        return res.scalar_one_or_none()

    async def list_windows(self, hospital: uuid.UUID, doctor_id: uuid.UUID | None = None, *, active_only: bool = True) -> Sequence[AvailabilityWindow]:
        conditions = [AvailabilityWindow.hospital_id==hospital, AvailabilityWindow.deleted_at.is_(None)]
        if doctor_id: conditions.append(AvailabilityWindow.doctor_id==doctor_id)
        if active_only: conditions.append(AvailabilityWindow.is_active.is_(True))
        res = await self.s.execute(select(AvailabilityWindow).where(*conditions).order_by(
            AvailabilityWindow.day_of_week, AvailabilityWindow.start_time
        ))
        return res.scalars().all()

    async def windows_for_day(self, hospital: uuid.UUID, doctor_id: uuid.UUID, day_of_week: int) -> Sequence[AvailabilityWindow]:
        res = await self.s.execute(select(AvailabilityWindow).where(
            AvailabilityWindow.hospital_id==hospital,
            AvailabilityWindow.doctor_id==doctor_id,
            AvailabilityWindow.day_of_week==day_of_week,
            AvailabilityWindow.is_active.is_(True),
            AvailabilityWindow.deleted_at.is_(None),
        ).order_by(AvailabilityWindow.start_time).execution_options(populate_existing=True))
        return res.scalars().all()

    # slots
    async def list_slots(self, hospital: uuid.UUID, doctor_id: uuid.UUID, slot_date: date) -> Sequence[TimeSlot]:
        res = await self.s.execute(select(TimeSlot).where(
            TimeSlot.hospital_id==hospital,
            TimeSlot.doctor_id==doctor_id,
            TimeSlot.slot_date==slot_date,
            TimeSlot.deleted_at.is_(None),
        ).order_by(TimeSlot.start_time).execution_options(populate_existing=True))
        return res.scalars().all()

    async def slot_dates(self, hospital: uuid.UUID, doctor_id: uuid.UUID, from_date: date) -> list[date]:
        res = await self.s.execute(select(TimeSlot.slot_date).where(
            TimeSlot.hospital_id==hospital,
            TimeSlot.doctor_id==doctor_id,
            TimeSlot.slot_date>=from_date,
            TimeSlot.state=="free",
            TimeSlot.deleted_at.is_(None),
        ).distinct().order_by(TimeSlot.slot_date))
        return list(res.scalars().all())

    async def get_slot(self, hospital: uuid.UUID, slot_id: uuid.UUID) -> TimeSlot | None:
        res = await self.s.execute(select(TimeSlot).where(
            TimeSlot.hospital_id==hospital, TimeSlot.id==slot_id, TimeSlot.deleted_at.is_(None)
        ).execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    async def slots_for_appointment(self, hospital: uuid.UUID, appointment_id: uuid.UUID) -> Sequence[TimeSlot]:
        res = await self.s.execute(select(TimeSlot).where(
            TimeSlot.hospital_id==hospital, TimeSlot.appointment_id==appointment_id, TimeSlot.deleted_at.is_(None)
        ).order_by(TimeSlot.slot_date, TimeSlot.start_time).execution_options(populate_existing=True))
        return res.scalars().all()

    async def add_slots(self, slots: list[TimeSlot]):
        self.s.add_all(slots); await self.s.flush()

    async def delete_free_slots(self, hospital: uuid.UUID, slot_ids: list[uuid.UUID]) -> int:
        if not slot_ids: return 0
        res = await self.s.execute(delete(TimeSlot).where(
            TimeSlot.hospital_id==hospital, TimeSlot.id.in_(slot_ids), TimeSlot.state=="free"
        ).execution_options(synchronize_session=False))
        return res.rowcount

    async def claim_slots(self, hospital: uuid.UUID, slot_ids: list[uuid.UUID], appointment_id: uuid.UUID) -> int:
        # guarded on state so a slot taken since we read it is never overwritten
        res = await self.s.execute(update(TimeSlot).where(
            TimeSlot.hospital_id==hospital, TimeSlot.id.in_(slot_ids), TimeSlot.state=="free"
        ).values(state="booked", appointment_id=appointment_id, version=TimeSlot.version + 1).execution_options(synchronize_session=False))
        return res.rowcount

    async def release_slots(self, hospital: uuid.UUID, appointment_id: uuid.UUID) -> list[uuid.UUID]:
        slots = await self.slots_for_appointment(hospital, appointment_id)
        ids = [s.id for s in slots]
        if ids:
            await self.s.execute(update(TimeSlot).where(
                TimeSlot.hospital_id==hospital, TimeSlot.appointment_id==appointment_id
            ).values(state="free", appointment_id=None, version=TimeSlot.version + 1).execution_options(synchronize_session=False))
        return ids
