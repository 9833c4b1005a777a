import uuid
from datetime import date
from typing import Sequence
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.scheduling.models import AppointmentBufferRule, ScheduleClosure, SchedulingLedger

class LedgerRepository:
    """Optimistic versioning for scheduling keys.

    `snapshot` must be called before the caller writes anything in the
    transaction: creating a missing ledger row commits on its own.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _read(self, hospital_id: uuid.UUID, scope: str, subject_id: uuid.UUID, day: date) -> tuple[uuid.UUID, int] | None:
        res = await self.session.execute(select(SchedulingLedger.id, SchedulingLedger.version).where(
            SchedulingLedger.hospital_id == hospital_id,
            SchedulingLedger.scope == scope,
            SchedulingLedger.subject_id == subject_id,
            SchedulingLedger.ledger_date == day,
        ))
        row = res.first()
        return (row[0], row[1]) if row else None

    async def snapshot(self, hospital_id: uuid.UUID, scope: str, subject_id: uuid.UUID, day: date) -> tuple[uuid.UUID, int]:
        found = await self._read(hospital_id, scope, subject_id, day)
        if found:
            return found
        self.session.add(SchedulingLedger(hospital_id=hospital_id, scope=scope, subject_id=subject_id, ledger_date=day, version=1))
        try:
            await self.session.commit()
        except IntegrityError:
            # another writer created it first
            await self.session.rollback()
        found = await self._read(hospital_id, scope, subject_id, day)
        assert found is not None
        return found

    async def bump(self, ledger_id: uuid.UUID, expected_version: int) -> bool:
        res = await self.session.execute(
            update(SchedulingLedger)
            .where(SchedulingLedger.id == ledger_id, SchedulingLedger.version == expected_version)
            .values(version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def touch(self, hospital_id: uuid.UUID, scope: str, subject_id: uuid.UUID, day: date) -> None:
        # unconditional bump for releases; a freed range never needs a compare-and-set
        await self.session.execute(
            update(SchedulingLedger)
            .where(
                SchedulingLedger.hospital_id == hospital_id,
                SchedulingLedger.scope == scope,
                SchedulingLedger.subject_id == subject_id,
                SchedulingLedger.ledger_date == day,
            )
            .values(version=SchedulingLedger.version + 1)
            .execution_options(synchronize_session=False)
        )

class BufferRuleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> AppointmentBufferRule:
        obj = AppointmentBufferRule(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list(self, hospital_id: uuid.UUID, *, active_only: bool = False) -> Sequence[AppointmentBufferRule]:
        conditions = [AppointmentBufferRule.hospital_id == hospital_id, AppointmentBufferRule.deleted_at.is_(None)]
        if active_only: conditions.append(AppointmentBufferRule.is_active.is_(True))
        res = await self.session.execute(select(AppointmentBufferRule).where(*conditions).order_by(AppointmentBufferRule.priority.desc()))
        return res.scalars().all()

    async def candidates(self, hospital_id: uuid.UUID, *, doctor_id: uuid.UUID) -> Sequence[AppointmentBufferRule]:
        # narrowing by doctor only; type/department matching happens in rules.select_buffer_rule
        res = await self.session.execute(select(AppointmentBufferRule).where(
            AppointmentBufferRule.hospital_id == hospital_id,
            AppointmentBufferRule.deleted_at.is_(None),
            AppointmentBufferRule.is_active.is_(True),
            or_(AppointmentBufferRule.doctor_id.is_(None), AppointmentBufferRule.doctor_id == doctor_id),
        ))
        return res.scalars().all()

class ClosureRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, hospital_id: uuid.UUID, **data) -> ScheduleClosure:
        obj = ScheduleClosure(hospital_id=hospital_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list(self, hospital_id: uuid.UUID, *, start: date | None = None, end: date | None = None) -> Sequence[ScheduleClosure]:
        conditions = [ScheduleClosure.hospital_id == hospital_id, ScheduleClosure.deleted_at.is_(None)]
        if start: conditions.append(ScheduleClosure.closure_date >= start)
        if end:   conditions.append(ScheduleClosure.closure_date <= end)
        res = await self.session.execute(select(ScheduleClosure).where(*conditions).order_by(ScheduleClosure.closure_date))
        return res.scalars().all()

    async def for_day(self, hospital_id: uuid.UUID, day: date, doctor_id: uuid.UUID) -> Sequence[ScheduleClosure]:
        res = await self.session.execute(select(ScheduleClosure).where(
            ScheduleClosure.hospital_id == hospital_id,
            ScheduleClosure.deleted_at.is_(None),
            ScheduleClosure.closure_date == day,
            or_(ScheduleClosure.doctor_id.is_(None), ScheduleClosure.doctor_id == doctor_id),
        ))
        return res.scalars().all()
