import uuid
from datetime import datetime, timedelta
from typing import Sequence
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.resources.models import HospitalResource, ResourceBooking

ACTIVE_BOOKING_STATES = ("pending", "confirmed")

class ResourceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> HospitalResource:
        obj = HospitalResource(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, hospital_id: uuid.UUID, resource_id: uuid.UUID) -> HospitalResource | None:
        res = await self.session.execute(select(HospitalResource).where(
            HospitalResource.id == resource_id,
            HospitalResource.hospital_id == hospital_id,
            HospitalResource.deleted_at.is_(None),
        ))
        return res.scalar_one_or_none()

    async def get_many(self, hospital_id: uuid.UUID, ids: list[uuid.UUID]) -> dict[uuid.UUID, HospitalResource]:
        if not ids: return {}
        res = await self.session.execute(select(HospitalResource).where(
            HospitalResource.id.in_(ids),
            HospitalResource.hospital_id == hospital_id,
            HospitalResource.deleted_at.is_(None),
        ).execution_options(populate_existing=True))
        return {r.id: r for r in res.scalars().all()}

    async def list(self, hospital_id: uuid.UUID, *, resource_type: str | None = None, active_only: bool = True) -> Sequence[HospitalResource]:
        conditions = [HospitalResource.hospital_id == hospital_id, HospitalResource.deleted_at.is_(None)]
        if resource_type: conditions.append(HospitalResource.resource_type == resource_type)
        if active_only:   conditions.append(HospitalResource.is_active.is_(True))
        res = await self.session.execute(select(HospitalResource).where(and_(*conditions)).order_by(HospitalResource.name))
        return res.scalars().all()

class ResourceBookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> ResourceBooking:
        obj = ResourceBooking(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, hospital_id: uuid.UUID, booking_id: uuid.UUID) -> ResourceBooking | None:
        res = await self.session.execute(select(ResourceBooking).where(
            ResourceBooking.id == booking_id,
            ResourceBooking.hospital_id == hospital_id,
            ResourceBooking.deleted_at.is_(None),
        ).execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    async def overlapping(self, hospital_id: uuid.UUID, resource_id: uuid.UUID, start: datetime, end: datetime, *, exclude_appointment_id: uuid.UUID | None = None) -> Sequence[ResourceBooking]:
        conditions = [
            ResourceBooking.hospital_id == hospital_id,
            ResourceBooking.resource_id == resource_id,
            ResourceBooking.deleted_at.is_(None),
            ResourceBooking.status.in_(ACTIVE_BOOKING_STATES),
            ResourceBooking.start_at < end,
            ResourceBooking.end_at > start,
        ]
        if exclude_appointment_id:
            conditions.append(ResourceBooking.appointment_id.is_distinct_from(exclude_appointment_id))
        res = await self.session.execute(select(ResourceBooking).where(*conditions).execution_options(populate_existing=True))
        return res.scalars().all()

    async def for_appointment(self, hospital_id: uuid.UUID, appointment_id: uuid.UUID, *, active_only: bool = True) -> Sequence[ResourceBooking]:
        conditions = [
            ResourceBooking.hospital_id == hospital_id,
            ResourceBooking.appointment_id == appointment_id,
            ResourceBooking.deleted_at.is_(None),
        ]
        if active_only: conditions.append(ResourceBooking.status.in_(ACTIVE_BOOKING_STATES))
        res = await self.session.execute(select(ResourceBooking).where(*conditions).execution_options(populate_existing=True))
        return res.scalars().all()

    async def list(self, hospital_id: uuid.UUID, *, resource_id: uuid.UUID | None = None, status: str | None = None, day: datetime | None = None, limit: int = 100, offset: int = 0) -> Sequence[ResourceBooking]:
        conditions = [ResourceBooking.hospital_id == hospital_id, ResourceBooking.deleted_at.is_(None)]
        if resource_id: conditions.append(ResourceBooking.resource_id == resource_id)
        if status:      conditions.append(ResourceBooking.status == status)
        if day:
            start = datetime(day.year, day.month, day.day)
            conditions += [ResourceBooking.start_at >= start, ResourceBooking.start_at < start + timedelta(days=1)]
        q = select(ResourceBooking).where(and_(*conditions)).order_by(ResourceBooking.start_at.asc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def transition(self, hospital_id: uuid.UUID, booking_id: uuid.UUID, from_statuses: Sequence[str], expected_version: int, **values) -> bool:
        # guarded on status and version: concurrent approve/deny/cancel, exactly one wins
        res = await self.session.execute(
            update(ResourceBooking)
            .where(
                ResourceBooking.hospital_id == hospital_id,
                ResourceBooking.id == booking_id,
                ResourceBooking.status.in_(from_statuses),
                ResourceBooking.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1
