"""Shared fixtures: a throwaway SQLite database per test and a small clinic builder."""

import os

# must be set before hospital_scheduling.core.config is imported
os.environ["ENV"] = "test"
os.environ["BACKGROUND_WORKERS_ENABLED"] = "false"
os.environ["HOSPITAL_TIMEZONE"] = "UTC"
os.environ["EVENT_BUS_PROVIDER"] = "noop"
os.environ.setdefault("POSTGRES_DSN", "sqlite+aiosqlite:///./.pytest-scheduling.db")

import uuid
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hospital_scheduling.core.base import Base
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import import_models
from hospital_scheduling.modules.availability.service import SlotGenerator, day_of_week
from hospital_scheduling.modules.resources.schemas import ResourceCreate
from hospital_scheduling.modules.resources.service import ResourceBookingManager
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import BookingRequest, BufferRuleCreate
from hospital_scheduling.modules.scheduling.service import SchedulingService


def upcoming(dow: int, weeks: int = 0) -> date:
    """Next date strictly after today falling on `dow` (0=Sunday), plus `weeks`."""
    today = date.today()
    ahead = (dow - day_of_week(today)) % 7 or 7
    return today + timedelta(days=ahead, weeks=weeks)


class Clinic:
    """Builds availability, rules and resources for one hospital."""

    def __init__(self, session: AsyncSession, hospital_id: uuid.UUID):
        self.session = session
        self.hospital_id = hospital_id

    async def window(self, doctor_id: uuid.UUID, day: date, start: str = "09:00", end: str = "12:00", minutes: int = 30, telemedicine: bool = False):
        return await SlotGenerator(self.session).create_window(
            self.hospital_id,
            doctor_id=doctor_id,
            day_of_week=day_of_week(day),
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            slot_duration_minutes=minutes,
            is_telemedicine=telemedicine,
        )

    async def open_day(self, doctor_id: uuid.UUID, day: date, start: str = "09:00", end: str = "12:00", minutes: int = 30):
        await self.window(doctor_id, day, start, end, minutes)
        result = await SlotGenerator(self.session).generate_slots(self.hospital_id, doctor_id, day, notify_waitlist=False)
        return result.slots

    def request(self, doctor_id: uuid.UUID, day: date, hhmm: str, minutes: int = 30, **kw) -> BookingRequest:
        kw.setdefault("patient_id", uuid.uuid4())
        return BookingRequest(doctor_id=doctor_id, start_at=datetime.combine(day, time.fromisoformat(hhmm)), duration_minutes=minutes, **kw)

    async def book(self, doctor_id: uuid.UUID, day: date, hhmm: str, minutes: int = 30, **kw):
        return await ConflictResolver(self.session).check_and_reserve(self.hospital_id, self.request(doctor_id, day, hhmm, minutes, **kw))

    async def rule(self, **kw):
        return await SchedulingService(self.session).create_buffer_rule(self.hospital_id, BufferRuleCreate(**kw))

    async def resource(self, **kw):
        kw.setdefault("name", "Room 1")
        kw.setdefault("resource_type", "room")
        return await ResourceBookingManager(self.session).create_resource(self.hospital_id, ResourceCreate(**kw))


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """Fresh schema in a file-backed SQLite database."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}")
    import_models()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


@pytest.fixture
def hospital_id() -> uuid.UUID:
    return uuid.UUID(settings.DEFAULT_HOSPITAL_ID)


@pytest.fixture
def doctor_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def clinic(session, hospital_id) -> Clinic:
    return Clinic(session, hospital_id)


@pytest.fixture
def monday() -> date:
    return upcoming(1)
