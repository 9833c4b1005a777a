import uuid
import logging
from datetime import date, time
from typing import NamedTuple, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.clock import local_now
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.errors import InvalidDefinition, NoAvailability, BookingBusy
from hospital_scheduling.modules.availability.models import AvailabilityWindow, TimeSlot
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.availability.schemas import window_error
from hospital_scheduling.modules.scheduling.repository import LedgerRepository
from hospital_scheduling.modules.events.outbox import OutboxService

logger = logging.getLogger(__name__)

def day_of_week(d: date) -> int:
    # 0=Sunday..6=Saturday
    return (d.weekday() + 1) % 7

def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute

def _time(m: int) -> time:
    return time(m // 60, m % 60)

def compute_slots(windows: Sequence[AvailabilityWindow], occupied: Sequence[tuple[time, time]] = ()) -> list[tuple[time, time, bool]]:
    """Tile each window into slot_duration steps, dropping partial trailing slots.

    Steps that would overlap an occupied range (a booked slot) or a slot already
    emitted from an earlier window are skipped.
    """
    taken = [(_minutes(s), _minutes(e)) for s, e in occupied]
    out: list[tuple[time, time, bool]] = []
    for w in sorted(windows, key=lambda w: w.start_time):
        dur = w.slot_duration_minutes
        cur, end = _minutes(w.start_time), _minutes(w.end_time)
        while cur + dur <= end:
            nxt = cur + dur
            if not any(cur < te and nxt > ts for ts, te in taken):
                out.append((_time(cur), _time(nxt), w.is_telemedicine))
                taken.append((cur, nxt))
            cur = nxt
    out.sort(key=lambda s: s[0])
    return out

class GenerationResult(NamedTuple):
    slots: list[TimeSlot]
    created_ids: list[uuid.UUID]
    removed: int

class SlotGenerator:
    def __init__(self, s: AsyncSession):
        self.s = s
        self.repo = AvailabilityRepository(s)
        self.ledgers = LedgerRepository(s)

    # windows
    async def create_window(self, hospital: uuid.UUID, **data) -> AvailabilityWindow:
        err = window_error(data["start_time"], data["end_time"], data.get("slot_duration_minutes", 30))
        if err: raise InvalidDefinition(err)
        obj = await self.repo.create_window(hospital, **data)
        await OutboxService(self.s).enqueue(hospital, "AVAILABILITY_WINDOW_CREATED", "availability_window", obj.id, {"doctor_id": str(obj.doctor_id), "day_of_week": obj.day_of_week})
        await self.s.commit()
        return obj

    async def list_windows(self, hospital: uuid.UUID, doctor_id: uuid.UUID | None = None):
        return await self.repo.list_windows(hospital, doctor_id)

    async def deactivate_window(self, hospital: uuid.UUID, window_id: uuid.UUID) -> AvailabilityWindow | None:
        obj = await self.repo.get_window(hospital, window_id)
        if not obj: return None
        obj.is_active = False
        doctor_id, dow = obj.doctor_id, obj.day_of_week
        await self.s.commit()
        # already generated days lose the free slots the window produced
        for d in await self.repo.slot_dates(hospital, doctor_id, local_now().date()):
            if day_of_week(d) != dow:
                continue
            try:
                await self.generate_slots(hospital, doctor_id, d, notify_waitlist=False)
            except NoAvailability:
                pass
        return await self.repo.get_window(hospital, window_id)

    async def list_slots(self, hospital: uuid.UUID, doctor_id: uuid.UUID, slot_date: date):
        return await self.repo.list_slots(hospital, doctor_id, slot_date)

    # generation
    async def generate_slots(self, hospital: uuid.UUID, doctor_id: uuid.UUID, slot_date: date, *, notify_waitlist: bool = True) -> GenerationResult:
        """Replace the day's free slots with the tiling of its active windows.

        Booked slots are kept. With no active window the free slots are still
        removed before NoAvailability is raised.
        """
        for _ in range(settings.BOOKING_MAX_RETRIES):
            ledger_id, version = await self.ledgers.snapshot(hospital, "doctor", doctor_id, slot_date)
            windows = await self.repo.windows_for_day(hospital, doctor_id, day_of_week(slot_date))

            existing = await self.repo.list_slots(hospital, doctor_id, slot_date)
            booked = [s for s in existing if s.state == "booked"]
            free = {(s.start_time, s.end_time): s for s in existing if s.state == "free"}
            computed = compute_slots(windows, [(b.start_time, b.end_time) for b in booked]) if windows else []
            wanted = {(st, et) for st, et, _ in computed}

            stale = [s.id for key, s in free.items() if key not in wanted]
            new = [
                TimeSlot(hospital_id=hospital, doctor_id=doctor_id, slot_date=slot_date, start_time=st, end_time=et, is_telemedicine=tele, state="free")
                for st, et, tele in computed if (st, et) not in free
            ]
            if not stale and not new:
                if not windows:
                    raise NoAvailability(f"no active availability for doctor {doctor_id} on {slot_date.isoformat()}")
                return GenerationResult(slots=list(existing), created_ids=[], removed=0)

            removed = await self.repo.delete_free_slots(hospital, stale)
            await self.repo.add_slots(new)
            if not await self.ledgers.bump(ledger_id, version):
                await self.s.rollback()
                continue
            await self.s.commit()
            break
        else:
            raise BookingBusy(f"slot generation for doctor {doctor_id} on {slot_date.isoformat()} kept conflicting")

        if not windows:
            logger.info(f"Removed {removed} free slot(s) doctor={doctor_id} date={slot_date}: no active availability")
            raise NoAvailability(f"no active availability for doctor {doctor_id} on {slot_date.isoformat()}")

        logger.info(f"Generated slots doctor={doctor_id} date={slot_date} created={len(new)} removed={removed} preserved_booked={len(booked)}")
        created_ids = [slot.id for slot in new]
        if notify_waitlist and created_ids:
            from hospital_scheduling.modules.waitlist.service import WaitlistMatcher
            matcher = WaitlistMatcher(self.s)
            for slot_id in created_ids:
                await matcher.on_slot_created(hospital, slot_id)
        slots = list(await self.repo.list_slots(hospital, doctor_id, slot_date))
        return GenerationResult(slots=slots, created_ids=created_ids, removed=removed)
