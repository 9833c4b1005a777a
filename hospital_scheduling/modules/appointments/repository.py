import uuid
from datetime import datetime, date, timedelta
from typing import Sequence
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.appointments.models import Appointment

class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> Appointment:
        obj = Appointment(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, hospital_id: uuid.UUID, appt_id: uuid.UUID) -> Appointment | None:
        q = select(Appointment).where(
            Appointment.id == appt_id,
            Appointment.hospital_id == hospital_id,
            Appointment.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def confirmed_for_doctor(self, hospital_id: uuid.UUID, doctor_id: uuid.UUID, start: datetime, end: datetime, *, exclude_id: uuid.UUID | None = None) -> Sequence[Appointment]:
        conditions = [
            Appointment.hospital_id == hospital_id,
            Appointment.doctor_id == doctor_id,
            Appointment.deleted_at.is_(None),
            Appointment.status == "confirmed",
            Appointment.start_at < end,
            Appointment.end_at > start,
        ]
        if exclude_id: conditions.append(Appointment.id != exclude_id)
        q = select(Appointment).where(*conditions).order_by(Appointment.start_at).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def future_for_series(self, hospital_id: uuid.UUID, series_id: uuid.UUID, after: datetime) -> Sequence[Appointment]:
        q = select(Appointment).where(
            Appointment.hospital_id == hospital_id,
            Appointment.series_id == series_id,
            Appointment.deleted_at.is_(None),
            Appointment.status == "confirmed",
            Appointment.start_at > after,
        ).order_by(Appointment.start_at)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list(self, hospital_id: uuid.UUID, *, doctor_id: uuid.UUID | None = None, patient_id: uuid.UUID | None = None, status: str | None = None, day: date | None = None, series_id: uuid.UUID | None = None, limit: int = 50, offset: int = 0) -> Sequence[Appointment]:
        conditions = [Appointment.hospital_id == hospital_id, Appointment.deleted_at.is_(None)]
        if doctor_id:  conditions.append(Appointment.doctor_id == doctor_id)
        if patient_id: conditions.append(Appointment.patient_id == patient_id)
        if status:     conditions.append(Appointment.status == status)
        if series_id:  conditions.append(Appointment.series_id == series_id)
        if day:
            start = datetime(day.year, day.month, day.day)
            conditions += [Appointment.start_at >= start, Appointment.start_at < start + timedelta(days=1)]
        q = select(Appointment).where(and_(*conditions)).order_by(Appointment.start_at.asc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def transition(self, hospital_id: uuid.UUID, appt_id: uuid.UUID, from_status: str, expected_version: int, **values) -> bool:
        res = await self.session.execute(
            update(Appointment)
            .where(
                Appointment.hospital_id == hospital_id,
                Appointment.id == appt_id,
                Appointment.status == from_status,
                Appointment.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1
