import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import TIMESTAMP, text, String, Integer, Text, JSON, select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from hospital_scheduling.core.base import Base, TimestampedTenantMixin
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import SessionLocal
from hospital_scheduling.platform.ports.event_bus import EventBusPort
from hospital_scheduling.platform.provider_registry import registry

log = logging.getLogger("event.outbox")

TOPIC = "scheduling.events"

class EventOutbox(Base, TimestampedTenantMixin):
    event_type: Mapped[str] = mapped_column(String(64))
    subject_type: Mapped[str] = mapped_column(String(32))
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | sent | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, hospital_id: uuid.UUID, *, event_type: str, subject_type: str, subject_id: str, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        obj = EventOutbox(
            hospital_id=hospital_id,
            event_type=event_type,
            subject_type=subject_type,
            subject_id=str(subject_id),
            payload=payload,
            occurred_at=occurred_at or datetime.now(timezone.utc),
            status="pending",
            attempts=0,
            next_attempt_at=datetime.now(timezone.utc),
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list_by_type(self, hospital_id: uuid.UUID, event_type: str) -> list[EventOutbox]:
        res = await self.session.execute(select(EventOutbox).where(
            EventOutbox.hospital_id == hospital_id,
            EventOutbox.event_type == event_type,
            EventOutbox.deleted_at.is_(None),
        ).order_by(EventOutbox.created_at.asc()))
        return list(res.scalars().all())

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        now = datetime.now(timezone.utc)
        # pending rows that are due, plus rows a crashed relay left in processing
        stalled = now - timedelta(seconds=settings.OUTBOX_CLAIM_TIMEOUT_SECONDS)
        q = (
            select(EventOutbox)
            .where(
                EventOutbox.deleted_at.is_(None),
                or_(
                    and_(EventOutbox.status == "pending", EventOutbox.next_attempt_at <= now),
                    and_(EventOutbox.status == "processing", EventOutbox.updated_at <= stalled),
                ),
            )
            .order_by(EventOutbox.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        for r in rows:
            r.status = "processing"
            r.updated_at = now
        await self.session.flush()
        return rows

    async def mark_sent(self, obj: EventOutbox):
        obj.status = "sent"
        obj.last_error = None
        await self.session.flush()

    async def mark_failed(self, obj: EventOutbox, error: str):
        obj.attempts = (obj.attempts or 0) + 1
        obj.last_error = error[:2000]
        if obj.attempts >= settings.OUTBOX_MAX_ATTEMPTS:
            obj.status = "failed"  # dead letter, needs requeue()
            log.error("Outbox event %s dead-lettered after %d attempts", obj.id, obj.attempts)
        else:
            obj.status = "pending"
            backoff = min(60, 2 ** min(obj.attempts, 6))  # 2,4,8,16,32,60s
            obj.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=backoff)
        await self.session.flush()

    async def requeue(self, hospital_id: uuid.UUID, event_id: uuid.UUID) -> bool:
        res = await self.session.execute(
            update(EventOutbox)
            .where(EventOutbox.hospital_id == hospital_id, EventOutbox.id == event_id, EventOutbox.status == "failed")
            .values(status="pending", attempts=0, next_attempt_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

class OutboxService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OutboxRepository(session)

    async def enqueue(self, hospital_id: uuid.UUID, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        return await self.repo.enqueue(hospital_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id), payload=payload, occurred_at=occurred_at)

# ---- Background relay ----

async def relay_batch(session: AsyncSession, bus: EventBusPort, limit: int = 50) -> int:
    """Publish one batch of pending events; returns how many were claimed."""
    repo = OutboxRepository(session)
    batch = await repo.claim_batch(limit=limit)
    for ev in batch:
        try:
            await bus.publish(topic=TOPIC, key=ev.subject_id or "-", value={
                "hospital_id": str(ev.hospital_id),
                "event_type": ev.event_type,
                "subject": {"type": ev.subject_type, "id": ev.subject_id},
                "payload": ev.payload,
                "occurred_at": ev.occurred_at.isoformat(),
                "outbox_id": str(ev.id),
            }, headers={"event_type": ev.event_type, "hospital_id": str(ev.hospital_id), "attempt": str((ev.attempts or 0) + 1)})
            await repo.mark_sent(ev)
        except Exception as ex:  # noqa
            log.exception("Publish failed")
            await repo.mark_failed(ev, error=str(ex))
    await session.commit()
    return len(batch)

async def run_outbox_relay(poll_interval_seconds: float | None = None, session_factory=SessionLocal):
    interval = poll_interval_seconds if poll_interval_seconds is not None else settings.OUTBOX_POLL_INTERVAL_SECONDS
    bus = registry.event_bus()
    log.info("Outbox relay started with bus=%s", bus.__class__.__name__)
    try:
        while True:
            async with session_factory() as session:
                try:
                    claimed = await relay_batch(session, bus)
                except Exception:
                    log.exception("Outbox relay iteration failed")
                    await session.rollback()
                    claimed = 0
            if not claimed:
                await asyncio.sleep(interval)
            await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Outbox relay cancelled; shutting down")
        raise
