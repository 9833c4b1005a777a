"""Recurring appointment series: definitions, lifecycle, and expansion.

Expansion walks occurrence dates past the series' high-water mark and books
each one through the conflict resolver like any other request. The mark and
the occurrence counter move in the same transaction as the booking (or the
skip), so a crashed or repeated expansion never materialises a date twice.
"""
from __future__ import annotations
import uuid
import asyncio
import logging
from datetime import date, datetime, time, timedelta
from typing import NamedTuple
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.clock import utcnow, local_now
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import SessionLocal
from hospital_scheduling.core.errors import BookingBusy, InvalidDefinition, NoAvailability, SeriesBusy
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.availability.service import SlotGenerator, day_of_week
from hospital_scheduling.modules.appointments.repository import AppointmentRepository
from hospital_scheduling.modules.appointments.service import AppointmentService
from hospital_scheduling.modules.events.outbox import OutboxService
from hospital_scheduling.modules.recurring.models import RecurringAppointment
from hospital_scheduling.modules.recurring.patterns import occurrence_dates, series_error
from hospital_scheduling.modules.recurring.repository import SeriesRepository
from hospital_scheduling.modules.recurring.schemas import SeriesCreate, AppointmentDraft
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import BookingRequest

logger = logging.getLogger(__name__)
expander_log = logging.getLogger("recurring.expander")

class _SeriesDef(NamedTuple):
    id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    department_id: uuid.UUID | None
    appointment_type: str | None
    reason_for_visit: str | None
    pattern_type: str
    interval_value: int
    days_of_week: list[int]
    day_of_month: int | None
    preferred_time: time
    duration_minutes: int
    required_resource_ids: list[uuid.UUID]
    series_start_date: date
    series_end_date: date | None
    max_occurrences: int | None
    occurrences_generated: int
    last_generated_date: date | None
    created_by: uuid.UUID | None

    @classmethod
    def of(cls, s: RecurringAppointment) -> "_SeriesDef":
        return cls(
            s.id, s.patient_id, s.doctor_id, s.department_id, s.appointment_type, s.reason_for_visit,
            s.pattern_type, s.interval_value or 1, list(s.days_of_week or []), s.day_of_month,
            s.preferred_time, s.duration_minutes, [uuid.UUID(str(x)) for x in s.required_resource_ids or []],
            s.series_start_date, s.series_end_date, s.max_occurrences, s.occurrences_generated or 0,
            s.last_generated_date, s.created_by,
        )

class RecurringSeriesService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = SeriesRepository(session)
        self.slots = AvailabilityRepository(session)

    async def create_series(self, hospital_id: uuid.UUID, payload: SeriesCreate, created_by: uuid.UUID | None = None) -> RecurringAppointment:
        data = payload.model_dump()
        err = series_error(
            data["pattern_type"], data["interval_value"], data["series_start_date"], data["series_end_date"],
            days_of_week=data["days_of_week"], day_of_month=data["day_of_month"], max_occurrences=data["max_occurrences"],
        )
        if not err and data["series_start_date"] < local_now().date():
            err = "series_start_date must not be in the past"
        if err: raise InvalidDefinition(err)

        if data["pattern_type"] == "weekly" and not data["days_of_week"]:
            data["days_of_week"] = [day_of_week(data["series_start_date"])]
        data["days_of_week"] = sorted(set(data["days_of_week"]))
        data["required_resource_ids"] = [str(x) for x in data["required_resource_ids"]]
        obj = await self.repo.create(hospital_id, status="active", occurrences_generated=0, created_by=created_by, **data)
        await OutboxService(self.session).enqueue(hospital_id, "SERIES_CREATED", "recurring_series", obj.id, {
            "seriesId": str(obj.id), "patient_id": str(obj.patient_id), "pattern_type": obj.pattern_type,
        })
        await self.session.commit()
        logger.info(f"Recurring series {obj.id} created pattern={obj.pattern_type}/{obj.interval_value} start={obj.series_start_date}")
        return obj

    async def get(self, hospital_id: uuid.UUID, series_id: uuid.UUID) -> RecurringAppointment | None:
        return await self.repo.get(hospital_id, series_id)

    async def list(self, hospital_id: uuid.UUID, **filters):
        return await self.repo.list(hospital_id, **filters)

    # ---- Lifecycle ----
    async def pause(self, hospital_id: uuid.UUID, series_id: uuid.UUID):
        return await self._move(hospital_id, series_id, ("active",), "paused")

    async def resume(self, hospital_id: uuid.UUID, series_id: uuid.UUID):
        return await self._move(hospital_id, series_id, ("paused",), "active")

    async def _move(self, hospital_id: uuid.UUID, series_id: uuid.UUID, from_statuses: tuple[str, ...], to_status: str):
        obj = await self.repo.get(hospital_id, series_id)
        if not obj: return None, "not_found"
        if not await self.repo.set_status(hospital_id, series_id, from_statuses, to_status):
            return None, "invalid_transition"
        await OutboxService(self.session).enqueue(hospital_id, f"SERIES_{to_status.upper()}", "recurring_series", series_id, {"seriesId": str(series_id)})
        await self.session.commit()
        logger.info(f"Recurring series {series_id} -> {to_status}")
        return await self.repo.get(hospital_id, series_id), None

    async def cancel(self, hospital_id: uuid.UUID, series_id: uuid.UUID, reason: str | None = None):
        obj, err = await self._move(hospital_id, series_id, ("active", "paused", "completed"), "cancelled")
        if err: return None, err

        # only appointments that have not happened yet; each cancel frees slots and feeds the waitlist
        future = await AppointmentRepository(self.session).future_for_series(hospital_id, series_id, local_now())
        ids = [a.id for a in future]
        appts = AppointmentService(self.session)
        for appt_id in ids:
            await appts.cancel(hospital_id, appt_id, reason or "series_cancelled")
        logger.info(f"Recurring series {series_id} cancelled with {len(ids)} future appointment(s)")
        return await self.repo.get(hospital_id, series_id), None

    # ---- Expansion ----
    async def expand(self, hospital_id: uuid.UUID, series_id: uuid.UUID, horizon: date | None = None, now: datetime | None = None):
        """Returns (drafts, err). Raises SeriesBusy when another worker holds the series."""
        now = now or utcnow()
        horizon = horizon or (local_now().date() + timedelta(days=settings.RECURRING_HORIZON_DAYS))
        s = await self.repo.get(hospital_id, series_id)
        if not s: return [], "not_found"
        if s.status != "active":
            # paused series keep their mark; completed/cancelled have nothing left
            return [], None

        if not await self.repo.claim_lease(hospital_id, series_id, now, now + timedelta(seconds=settings.SERIES_LEASE_SECONDS)):
            await self.session.rollback()
            raise SeriesBusy(f"series {series_id} is being expanded by another worker")
        await self.session.commit()
        try:
            drafts = await self._expand_leased(hospital_id, series_id, horizon)
        finally:
            await self.session.rollback()
            await self.repo.release_lease(hospital_id, series_id)
            await self.session.commit()
        return drafts, None

    async def _expand_leased(self, hospital_id: uuid.UUID, series_id: uuid.UUID, horizon: date) -> list[AppointmentDraft]:
        s = await self.repo.get(hospital_id, series_id)
        if s is None or s.status != "active":
            return []
        defn = _SeriesDef.of(s)
        until = min(horizon, defn.series_end_date) if defn.series_end_date else horizon
        generated = defn.occurrences_generated
        drafts: list[AppointmentDraft] = []

        dates = occurrence_dates(
            defn.pattern_type, defn.interval_value, defn.series_start_date,
            until=until, after=defn.last_generated_date,
            days_of_week=defn.days_of_week, day_of_month=defn.day_of_month,
        )
        stopped = False
        for occ in dates:
            if defn.max_occurrences is not None and generated >= defn.max_occurrences:
                break
            try:
                draft = await self._materialise(hospital_id, defn, occ)
            except BookingBusy as e:
                await self.session.rollback()
                expander_log.warning(f"Series {series_id} stopped at {occ}: {e}; next pass resumes from the high-water mark")
                stopped = True
                break
            drafts.append(draft)
            generated += 1

        exhausted = not stopped and (
            (defn.max_occurrences is not None and generated >= defn.max_occurrences)
            or (defn.series_end_date is not None and horizon >= defn.series_end_date)
        )
        if exhausted and await self.repo.set_status(hospital_id, series_id, ("active",), "completed"):
            await OutboxService(self.session).enqueue(hospital_id, "SERIES_COMPLETED", "recurring_series", series_id, {"seriesId": str(series_id), "occurrences": generated})
            await self.session.commit()
            logger.info(f"Recurring series {series_id} completed after {generated} occurrence(s)")

        booked = sum(1 for d in drafts if d.status == "booked")
        expander_log.info(f"Expanded series {series_id} through {until}: booked={booked} skipped={len(drafts) - booked}")
        return drafts

    async def _materialise(self, hospital_id: uuid.UUID, defn: _SeriesDef, occ: date) -> AppointmentDraft:
        start_at = datetime.combine(occ, defn.preferred_time)
        end_at = start_at + timedelta(minutes=defn.duration_minutes)

        if not await self.slots.list_slots(hospital_id, defn.doctor_id, occ):
            try:
                # series bookings claim these right away; no waitlist pass for them
                await SlotGenerator(self.session).generate_slots(hospital_id, defn.doctor_id, occ, notify_waitlist=False)
            except NoAvailability:
                pass  # the resolver reports it as doctor_unavailable

        req = BookingRequest(
            patient_id=defn.patient_id,
            doctor_id=defn.doctor_id,
            appointment_type=defn.appointment_type,
            department_id=defn.department_id,
            start_at=start_at,
            duration_minutes=defn.duration_minutes,
            required_resources=defn.required_resource_ids,
            reason_for_visit=defn.reason_for_visit,
            booked_by=defn.created_by,
            series_id=defn.id,
            occurrence_date=occ,
        )

        async def advance(appt):
            if not await self.repo.advance(hospital_id, defn.id, occ):
                raise SeriesBusy(f"series {defn.id} high-water mark moved past {occ.isoformat()}")

        reservation, conflicts = await ConflictResolver(self.session).check_and_reserve(hospital_id, req, before_commit=advance)
        if reservation is not None:
            return AppointmentDraft(occurrence_date=occ, start_at=start_at, end_at=end_at, status="booked", appointment_id=reservation.appointment_id)

        reason = "; ".join(c.description for c in conflicts)
        await self.repo.advance(hospital_id, defn.id, occ)
        await OutboxService(self.session).enqueue(hospital_id, "SERIES_OCCURRENCE_SKIPPED", "recurring_series", defn.id, {
            "seriesId": str(defn.id),
            "occurrenceDate": occ.isoformat(),
            "reason": reason,
        })
        await self.session.commit()
        logger.warning(f"Series {defn.id} occurrence {occ} skipped: {reason}")
        return AppointmentDraft(occurrence_date=occ, start_at=start_at, end_at=end_at, status="skipped-conflict", conflicts=conflicts)

# ---- Background expander ----

async def expand_all(session_factory=SessionLocal, horizon: date | None = None) -> int:
    """One pass over every active series; returns how many were expanded."""
    async with session_factory() as session:
        keys = await SeriesRepository(session).active_keys()
    done = 0
    for hospital_id, series_id in keys:
        async with session_factory() as session:
            try:
                await RecurringSeriesService(session).expand(hospital_id, series_id, horizon)
                done += 1
            except SeriesBusy:
                expander_log.debug(f"Series {series_id} busy, skipping this pass")
            except Exception:
                expander_log.exception(f"Expansion of series {series_id} failed")
                await session.rollback()
    return done

async def run_series_expander(interval_seconds: float | None = None, session_factory=SessionLocal):
    interval = interval_seconds if interval_seconds is not None else settings.RECURRING_EXPANSION_INTERVAL_SECONDS
    expander_log.info("Recurring expander started, interval=%ss horizon=%sd", interval, settings.RECURRING_HORIZON_DAYS)
    try:
        while True:
            try:
                await expand_all(session_factory)
            except Exception:
                expander_log.exception("Recurring expander pass failed")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        expander_log.info("Recurring expander cancelled; shutting down")
        raise
