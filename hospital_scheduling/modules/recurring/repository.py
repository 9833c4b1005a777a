from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Sequence
from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.recurring.models import RecurringAppointment

class SeriesRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> RecurringAppointment:
        obj = RecurringAppointment(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, hospital_id: uuid.UUID, series_id: uuid.UUID) -> RecurringAppointment | None:
        res = await self.session.execute(select(RecurringAppointment).where(
            RecurringAppointment.id == series_id,
            RecurringAppointment.hospital_id == hospital_id,
            RecurringAppointment.deleted_at.is_(None),
        ).execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    async def list(self, hospital_id: uuid.UUID, *, status: str | None = None, patient_id: uuid.UUID | None = None, doctor_id: uuid.UUID | None = None) -> Sequence[RecurringAppointment]:
        conditions = [RecurringAppointment.hospital_id == hospital_id, RecurringAppointment.deleted_at.is_(None)]
        if status:     conditions.append(RecurringAppointment.status == status)
        if patient_id: conditions.append(RecurringAppointment.patient_id == patient_id)
        if doctor_id:  conditions.append(RecurringAppointment.doctor_id == doctor_id)
        res = await self.session.execute(select(RecurringAppointment).where(and_(*conditions)).order_by(RecurringAppointment.created_at))
        return res.scalars().all()

    async def active_keys(self) -> list[tuple[uuid.UUID, uuid.UUID]]:
        # (hospital_id, series_id) across tenants, for the background expander
        res = await self.session.execute(select(RecurringAppointment.hospital_id, RecurringAppointment.id).where(
            RecurringAppointment.deleted_at.is_(None),
            RecurringAppointment.status == "active",
        ))
        return [tuple(r) for r in res.all()]

    async def set_status(self, hospital_id: uuid.UUID, series_id: uuid.UUID, from_statuses: tuple[str, ...], to_status: str) -> bool:
        res = await self.session.execute(
            update(RecurringAppointment)
            .where(
                RecurringAppointment.hospital_id == hospital_id,
                RecurringAppointment.id == series_id,
                RecurringAppointment.status.in_(from_statuses),
            )
            .values(status=to_status, version=RecurringAppointment.version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def claim_lease(self, hospital_id: uuid.UUID, series_id: uuid.UUID, now: datetime, until: datetime) -> bool:
        res = await self.session.execute(
            update(RecurringAppointment)
            .where(
                RecurringAppointment.hospital_id == hospital_id,
                RecurringAppointment.id == series_id,
                or_(RecurringAppointment.expansion_lease_until.is_(None), RecurringAppointment.expansion_lease_until <= now),
            )
            .values(expansion_lease_until=until)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def release_lease(self, hospital_id: uuid.UUID, series_id: uuid.UUID):
        await self.session.execute(
            update(RecurringAppointment)
            .where(RecurringAppointment.hospital_id == hospital_id, RecurringAppointment.id == series_id)
            .values(expansion_lease_until=None)
            .execution_options(synchronize_session=False)
        )

    async def advance(self, hospital_id: uuid.UUID, series_id: uuid.UUID, occurrence_date: date) -> bool:
        # high-water mark only moves forward
        res = await self.session.execute(
            update(RecurringAppointment)
            .where(
                RecurringAppointment.hospital_id == hospital_id,
                RecurringAppointment.id == series_id,
                or_(RecurringAppointment.last_generated_date.is_(None), RecurringAppointment.last_generated_date < occurrence_date),
            )
            .values(
                last_generated_date=occurrence_date,
                occurrences_generated=RecurringAppointment.occurrences_generated + 1,
                version=RecurringAppointment.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1
