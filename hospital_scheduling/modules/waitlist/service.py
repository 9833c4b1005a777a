"""Waitlist matching for slots that become free.

A freed or newly generated slot is offered to the best-ranked active entry
that fits it. Entries with `auto_book` whose notice window covers the slot
are booked straight through the resolver; everyone else gets a timed offer
published as a WAITLIST_OFFER event. Offers are not holds: expiry is a
timestamp checked on confirm and by the periodic sweep.
"""
import uuid
import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import NamedTuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.clock import utcnow, as_aware, to_local, to_utc
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import SessionLocal
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.events.outbox import OutboxService
from hospital_scheduling.modules.scheduling.repository import LedgerRepository
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import BookingRequest
from hospital_scheduling.modules.waitlist.models import AppointmentWaitlist
from hospital_scheduling.modules.waitlist.ranking import rank, slot_matches
from hospital_scheduling.modules.waitlist.repository import WaitlistRepository
from hospital_scheduling.modules.waitlist.schemas import WaitlistCreate, WaitlistMatchOut, SweepOut

logger = logging.getLogger(__name__)
sweep_log = logging.getLogger("waitlist.sweeper")

class _EntryMoved(Exception):
    pass

class _SlotFacts(NamedTuple):
    id: uuid.UUID
    doctor_id: uuid.UUID
    slot_date: date
    start_at: datetime
    minutes: int

    @classmethod
    def of(cls, slot) -> "_SlotFacts":
        return cls(slot.id, slot.doctor_id, slot.slot_date, slot.start_at, int((slot.end_at - slot.start_at).total_seconds() // 60))

# plain values survive a rollback inside the resolver; ORM rows do not
class _Candidate(NamedTuple):
    id: uuid.UUID
    version: int
    patient_id: uuid.UUID
    department_id: uuid.UUID | None
    appointment_type: str | None
    reason_for_visit: str | None
    auto_book: bool
    max_notice_hours: int
    contact_method: str

    @classmethod
    def of(cls, e: AppointmentWaitlist) -> "_Candidate":
        return cls(e.id, e.version, e.patient_id, e.department_id, e.appointment_type, e.reason_for_visit, bool(e.auto_book), e.max_notice_hours, e.contact_method)

class WaitlistMatcher:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = WaitlistRepository(session)
        self.slots = AvailabilityRepository(session)
        self.ledgers = LedgerRepository(session)

    # ---- Entries ----
    async def create_entry(self, hospital_id: uuid.UUID, payload: WaitlistCreate) -> AppointmentWaitlist:
        obj = await self.repo.create_entry(hospital_id, status="active", **payload.model_dump())
        await OutboxService(self.session).enqueue(hospital_id, "WAITLIST_ENTRY_CREATED", "waitlist_entry", obj.id, {
            "patient_id": str(obj.patient_id),
            "doctor_id": str(obj.doctor_id) if obj.doctor_id else None,
            "priority": obj.priority,
            "urgency_level": obj.urgency_level,
        })
        await self.session.commit()
        logger.info(f"Waitlist entry {obj.id} created patient={obj.patient_id} urgency={obj.urgency_level} priority={obj.priority}")
        return obj

    async def get_entry(self, hospital_id: uuid.UUID, entry_id: uuid.UUID) -> AppointmentWaitlist | None:
        return await self.repo.get_entry(hospital_id, entry_id)

    async def list_entries(self, hospital_id: uuid.UUID, status: str | None = None, doctor_id: uuid.UUID | None = None) -> list[AppointmentWaitlist]:
        return rank(await self.repo.list_entries(hospital_id, status=status, doctor_id=doctor_id))

    async def cancel_entry(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, now: datetime | None = None):
        now = now or utcnow()
        entry = await self.repo.get_entry(hospital_id, entry_id)
        if not entry: return None, "not_found"
        if entry.status not in ("active", "notified"):
            return None, "invalid_transition"
        was_notified, slot_id = entry.status == "notified", entry.offered_slot_id
        if not await self.repo.transition(hospital_id, entry.id, entry.status, entry.version, status="cancelled"):
            await self.session.rollback()
            return None, "invalid_transition"
        if was_notified and slot_id:
            await self.repo.close_offer(hospital_id, entry_id, slot_id, "superseded", now)
        await self.session.commit()
        if was_notified and slot_id:
            await self._match(hospital_id, slot_id, None, now)
        return await self.repo.get_entry(hospital_id, entry_id), None

    # ---- Matching ----
    async def on_slot_freed(self, hospital_id: uuid.UUID, slot_id: uuid.UUID, appointment_type: str | None = None, now: datetime | None = None) -> WaitlistMatchOut | None:
        return await self._match(hospital_id, slot_id, appointment_type, now or utcnow())

    async def on_slot_created(self, hospital_id: uuid.UUID, slot_id: uuid.UUID, now: datetime | None = None) -> WaitlistMatchOut | None:
        return await self._match(hospital_id, slot_id, None, now or utcnow())

    async def _match(self, hospital_id: uuid.UUID, slot_id: uuid.UUID, appointment_type: str | None, now: datetime) -> WaitlistMatchOut | None:
        slot = await self.slots.get_slot(hospital_id, slot_id)
        if slot is None or slot.state != "free":
            return None
        facts = _SlotFacts.of(slot)
        now = as_aware(now)
        lead_hours = (facts.start_at - to_local(now)).total_seconds() / 3600
        if lead_hours <= 0:
            logger.debug(f"Slot {slot_id} already started at {facts.start_at}; not offered")
            return None
        if await self.repo.outstanding_offer(hospital_id, slot_id, now):
            logger.debug(f"Slot {slot_id} already has an outstanding offer")
            return None
        entries = await self.repo.candidates_for_slot(hospital_id, slot_id=slot.id, doctor_id=slot.doctor_id, slot_date=slot.slot_date)
        candidates = [_Candidate.of(e) for e in rank(e for e in entries if slot_matches(e, slot, appointment_type))]
        if not candidates:
            logger.info(f"No waitlist candidates for slot {slot_id} ({facts.start_at}); slot stays free")
            return None

        for c in candidates:
            if c.auto_book and lead_hours <= c.max_notice_hours:
                match = await self._auto_book(hospital_id, c, facts, now)
            else:
                match = await self._notify(hospital_id, c, facts, now)
            if match:
                return match
        return None

    def _request(self, c: _Candidate, facts: _SlotFacts) -> BookingRequest:
        return BookingRequest(
            patient_id=c.patient_id,
            doctor_id=facts.doctor_id,
            appointment_type=c.appointment_type,
            department_id=c.department_id,
            start_at=facts.start_at,
            duration_minutes=facts.minutes,
            reason_for_visit=c.reason_for_visit,
            waitlist_entry_id=c.id,
        )

    async def _book_for(self, hospital_id: uuid.UUID, c: _Candidate, facts: _SlotFacts, from_status: str, now: datetime):
        async def mark_booked(appt):
            moved = await self.repo.transition(hospital_id, c.id, from_status, c.version, status="booked", booked_appointment_id=appt.id, offered_slot_id=facts.id)
            if not moved:
                raise _EntryMoved(c.id)
            if from_status == "notified":
                await self.repo.close_offer(hospital_id, c.id, facts.id, "accepted", now)
            else:
                await self.repo.create_offer(hospital_id, entry_id=c.id, slot_id=facts.id, status="accepted", offered_at=now, responded_at=now)
            await OutboxService(self.session).enqueue(hospital_id, "WAITLIST_BOOKED", "waitlist_entry", c.id, {
                "waitlistEntryId": str(c.id), "slotId": str(facts.id), "appointmentId": str(appt.id),
            })

        try:
            return await ConflictResolver(self.session).check_and_reserve(hospital_id, self._request(c, facts), before_commit=mark_booked)
        except _EntryMoved:
            await self.session.rollback()
            return None, []

    async def _auto_book(self, hospital_id: uuid.UUID, c: _Candidate, facts: _SlotFacts, now: datetime) -> WaitlistMatchOut | None:
        reservation, conflicts = await self._book_for(hospital_id, c, facts, "active", now)
        if reservation is None:
            if conflicts:
                logger.info(f"Auto-book of slot {facts.id} for entry {c.id} hit {len(conflicts)} conflict(s); trying next candidate")
            return None
        logger.info(f"Waitlist entry {c.id} auto-booked into slot {facts.id} as appointment {reservation.appointment_id}")
        return WaitlistMatchOut(entry_id=c.id, slot_id=facts.id, outcome="booked", appointment_id=reservation.appointment_id)

    async def _notify(self, hospital_id: uuid.UUID, c: _Candidate, facts: _SlotFacts, now: datetime) -> WaitlistMatchOut | None:
        # one offer per slot at a time, serialised on the slot's offer ledger
        offer_key = await self.ledgers.snapshot(hospital_id, "offer", facts.id, facts.slot_date)
        if await self.repo.outstanding_offer(hospital_id, facts.id, now):
            return None
        # an offer never outlives the slot it is for
        expires = min(now + timedelta(hours=min(c.max_notice_hours, settings.WAITLIST_OFFER_DEFAULT_HOURS)), to_utc(facts.start_at))
        moved = await self.repo.transition(hospital_id, c.id, "active", c.version, status="notified", notified_at=now, expires_at=expires, offered_slot_id=facts.id)
        if not moved or not await self.ledgers.bump(*offer_key):
            await self.session.rollback()
            return None
        try:
            await self.repo.create_offer(hospital_id, entry_id=c.id, slot_id=facts.id, status="offered", offered_at=now, expires_at=expires)
        except IntegrityError:
            await self.session.rollback()
            return None
        await OutboxService(self.session).enqueue(hospital_id, "WAITLIST_OFFER", "waitlist_entry", c.id, {
            "waitlistEntryId": str(c.id),
            "slotId": str(facts.id),
            "expiresAt": expires.isoformat(),
            "contactMethod": c.contact_method,
        })
        await self.session.commit()
        logger.info(f"Offered slot {facts.id} to waitlist entry {c.id} until {expires.isoformat()}")
        return WaitlistMatchOut(entry_id=c.id, slot_id=facts.id, outcome="notified", expires_at=expires)

    # ---- Offer responses ----
    async def confirm_offer(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, now: datetime | None = None):
        """Returns (reservation, conflicts, err)."""
        now = now or utcnow()
        entry = await self.repo.get_entry(hospital_id, entry_id)
        if not entry: return None, [], "not_found"
        if entry.status != "notified":
            return None, [], "invalid_transition"
        c, slot_id = _Candidate.of(entry), entry.offered_slot_id
        if entry.expires_at is not None and as_aware(entry.expires_at) <= now:
            if await self._expire(hospital_id, c.id, c.version, slot_id, now) and slot_id:
                await self._match(hospital_id, slot_id, None, now)
            return None, [], "offer_expired"

        slot = await self.slots.get_slot(hospital_id, slot_id) if slot_id else None
        if slot is None or slot.state != "free":
            # taken elsewhere; the entry goes back to the queue
            if await self.repo.transition(hospital_id, c.id, "notified", c.version, status="active", expires_at=None, offered_slot_id=None):
                if slot_id:
                    await self.repo.close_offer(hospital_id, c.id, slot_id, "superseded", now)
                await self.session.commit()
            return None, [], "slot_unavailable"

        reservation, conflicts = await self._book_for(hospital_id, c, _SlotFacts.of(slot), "notified", now)
        if reservation is None and not conflicts:
            return None, [], "invalid_transition"
        if conflicts:
            return None, conflicts, None
        logger.info(f"Waitlist entry {entry_id} accepted slot {slot_id}")
        return reservation, [], None

    async def decline_offer(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, now: datetime | None = None):
        now = now or utcnow()
        entry = await self.repo.get_entry(hospital_id, entry_id)
        if not entry: return None, "not_found"
        if entry.status != "notified":
            return None, "invalid_transition"
        slot_id = entry.offered_slot_id
        if not await self.repo.transition(hospital_id, entry.id, "notified", entry.version, status="active", expires_at=None, offered_slot_id=None):
            await self.session.rollback()
            return None, "invalid_transition"
        if slot_id:
            await self.repo.close_offer(hospital_id, entry_id, slot_id, "declined", now)
        await self.session.commit()
        logger.info(f"Waitlist entry {entry_id} declined slot {slot_id}")
        if slot_id:
            await self._match(hospital_id, slot_id, None, now)
        return await self.repo.get_entry(hospital_id, entry_id), None

    async def _expire(self, hospital_id: uuid.UUID, entry_id: uuid.UUID, version: int, slot_id: uuid.UUID | None, now: datetime) -> bool:
        if not await self.repo.transition(hospital_id, entry_id, "notified", version, status="expired"):
            await self.session.rollback()
            return False
        if slot_id:
            await self.repo.close_offer(hospital_id, entry_id, slot_id, "expired", now)
        await OutboxService(self.session).enqueue(hospital_id, "WAITLIST_OFFER_EXPIRED", "waitlist_entry", entry_id, {
            "waitlistEntryId": str(entry_id), "slotId": str(slot_id) if slot_id else None,
        })
        await self.session.commit()
        return True

    # ---- Expiry sweep ----
    async def sweep_expired(self, hospital_id: uuid.UUID | None = None, now: datetime | None = None) -> SweepOut:
        now = now or utcnow()
        expired = reoffered = 0
        for entry_id, hid, version, slot_id in await self.repo.expired_notified(hospital_id, now):
            if not await self._expire(hid, entry_id, version, slot_id, now):
                continue
            expired += 1
            if slot_id and await self._match(hid, slot_id, None, now):
                reoffered += 1

        lapsed = 0
        for entry_id, hid, version in await self.repo.lapsed_active(hospital_id, to_local(now).date()):
            if await self.repo.transition(hid, entry_id, "active", version, status="expired"):
                lapsed += 1
        await self.session.commit()
        if expired or lapsed:
            sweep_log.info(f"Waitlist sweep expired_offers={expired} expired_entries={lapsed} reoffered={reoffered}")
        return SweepOut(expired_offers=expired, expired_entries=lapsed, reoffered=reoffered)

# ---- Background sweeper ----

async def run_waitlist_sweeper(interval_seconds: float | None = None, session_factory=SessionLocal):
    interval = interval_seconds if interval_seconds is not None else settings.WAITLIST_SWEEP_INTERVAL_SECONDS
    sweep_log.info("Waitlist sweeper started, interval=%ss", interval)
    try:
        while True:
            async with session_factory() as session:
                try:
                    await WaitlistMatcher(session).sweep_expired()
                except Exception:
                    sweep_log.exception("Waitlist sweep iteration failed")
                    await session.rollback()
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        sweep_log.info("Waitlist sweeper cancelled; shutting down")
        raise
