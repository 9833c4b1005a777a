import uuid
from datetime import date, datetime
from typing import Sequence
from sqlalchemy import select, update, exists, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.waitlist.models import AppointmentWaitlist, WaitlistOffer

class WaitlistRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # entries
    async def create_entry(self, hospital_id: uuid.UUID, **data) -> AppointmentWaitlist:
        obj = AppointmentWaitlist(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get_entry(self, hospital_id: uuid.UUID, entry_id: uuid.UUID) -> AppointmentWaitlist | None:
        res = await self.session.execute(select(AppointmentWaitlist).where(
            AppointmentWaitlist.id == entry_id,
            AppointmentWaitlist.hospital_id == hospital_id,
            AppointmentWaitlist.deleted_at.is_(None),
        ).execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    async def list_entries(self, hospital_id: uuid.UUID, *, status: str | None = None, doctor_id: uuid.UUID | None = None) -> Sequence[AppointmentWaitlist]:
        conditions = [AppointmentWaitlist.hospital_id == hospital_id, AppointmentWaitlist.deleted_at.is_(None)]
        if status:    conditions.append(AppointmentWaitlist.status == status)
        if doctor_id: conditions.append(AppointmentWaitlist.doctor_id == doctor_id)
        res = await self.session.execute(select(AppointmentWaitlist).where(and_(*conditions)).execution_options(populate_existing=True))
        return res.scalars().all()

    async def candidates_for_slot(self, hospital_id: uuid.UUID, *, slot_id: uuid.UUID, doctor_id: uuid.UUID, slot_date: date) -> Sequence[AppointmentWaitlist]:
        # coarse SQL filter; preferred times and appointment type are checked in ranking.slot_matches
        already_offered = exists().where(WaitlistOffer.entry_id == AppointmentWaitlist.id, WaitlistOffer.slot_id == slot_id)
        res = await self.session.execute(select(AppointmentWaitlist).where(
            AppointmentWaitlist.hospital_id == hospital_id,
            AppointmentWaitlist.deleted_at.is_(None),
            AppointmentWaitlist.status == "active",
            or_(AppointmentWaitlist.doctor_id.is_(None), AppointmentWaitlist.doctor_id == doctor_id),
            or_(AppointmentWaitlist.preferred_date_start.is_(None), AppointmentWaitlist.preferred_date_start <= slot_date),
            or_(AppointmentWaitlist.preferred_date_end.is_(None), AppointmentWaitlist.preferred_date_end >= slot_date),
            ~already_offered,
        ).execution_options(populate_existing=True))
        return res.scalars().all()

    async def transition(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, from_status: str, expected_version: int, **values) -> bool:
        # guarded on status and version: exactly one writer moves an entry out of a state
        res = await self.session.execute(
            update(AppointmentWaitlist)
            .where(
                AppointmentWaitlist.hospital_id == hospital_id,
                AppointmentWaitlist.id == entry_id,
                AppointmentWaitlist.status == from_status,
                AppointmentWaitlist.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def expired_notified(self, hospital_id: uuid.UUID | None, now: datetime) -> list[tuple]:
        conditions = [
            AppointmentWaitlist.deleted_at.is_(None),
            AppointmentWaitlist.status == "notified",
            AppointmentWaitlist.expires_at <= now,
        ]
        if hospital_id: conditions.append(AppointmentWaitlist.hospital_id == hospital_id)
        res = await self.session.execute(select(
            AppointmentWaitlist.id, AppointmentWaitlist.hospital_id, AppointmentWaitlist.version, AppointmentWaitlist.offered_slot_id,
        ).where(*conditions).order_by(AppointmentWaitlist.expires_at))
        return [tuple(r) for r in res.all()]

    async def lapsed_active(self, hospital_id: uuid.UUID | None, today: date) -> list[tuple]:
        conditions = [
            AppointmentWaitlist.deleted_at.is_(None),
            AppointmentWaitlist.status == "active",
            AppointmentWaitlist.preferred_date_end < today,
        ]
        if hospital_id: conditions.append(AppointmentWaitlist.hospital_id == hospital_id)
        res = await self.session.execute(select(
            AppointmentWaitlist.id, AppointmentWaitlist.hospital_id, AppointmentWaitlist.version,
        ).where(*conditions))
        return [tuple(r) for r in res.all()]

    # offers
    async def create_offer(self, hospital_id: uuid.UUID, **data) -> WaitlistOffer:
        obj = WaitlistOffer(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def outstanding_offer(self, hospital_id: uuid.UUID, slot_id: uuid.UUID, now: datetime) -> WaitlistOffer | None:
        res = await self.session.execute(select(WaitlistOffer).where(
            WaitlistOffer.hospital_id == hospital_id,
            WaitlistOffer.slot_id == slot_id,
            WaitlistOffer.status == "offered",
            WaitlistOffer.expires_at > now,
        ).limit(1))
        return res.scalar_one_or_none()

    async def close_offer(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, slot_id: uuid.UUID, status: str, now: datetime) -> int:
        res = await self.session.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.hospital_id == hospital_id,
                WaitlistOffer.entry_id == entry_id,
                WaitlistOffer.slot_id == slot_id,
                WaitlistOffer.status == "offered",
            )
            .values(status=status, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount

    async def offers_for_entry(self, hospital_id: uuid.UUID, entry_id: uuid.UUID) -> Sequence[WaitlistOffer]:
        res = await self.session.execute(select(WaitlistOffer).where(
            WaitlistOffer.hospital_id == hospital_id, WaitlistOffer.entry_id == entry_id,
        ).order_by(WaitlistOffer.offered_at))
        return res.scalars().all()
