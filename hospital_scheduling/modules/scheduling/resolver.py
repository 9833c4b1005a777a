"""Check-and-reserve for one booking request.

Every conflict in the request is collected and returned together. When there
are none the appointment, its slots and its resource bookings are written in
one transaction, guarded by the doctor/resource ledger versions read at the
start of the attempt. A version that moved means another writer got there
first: the attempt is rolled back and re-evaluated from scratch.
"""
import uuid
import random
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.config import settings
from hospital_scheduling.core.errors import BookingBusy
from hospital_scheduling.modules.appointments.models import Appointment
from hospital_scheduling.modules.appointments.repository import AppointmentRepository
from hospital_scheduling.modules.availability.models import TimeSlot
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.events.outbox import OutboxService
from hospital_scheduling.modules.resources.models import HospitalResource
from hospital_scheduling.modules.resources.service import ResourceBookingManager
from hospital_scheduling.modules.scheduling.repository import LedgerRepository, BufferRuleRepository, ClosureRepository
from hospital_scheduling.modules.scheduling.rules import BufferPolicy, select_buffer_rule, padded, overlaps, consecutive_run
from hospital_scheduling.modules.scheduling.schemas import BookingRequest, SchedulingConflict, Reservation, ReservedResource

logger = logging.getLogger(__name__)

BeforeCommit = Callable[[Appointment], Awaitable[None]]

_STALE = object()

def _hm(dt: datetime) -> str:
    return dt.strftime("%H:%M")

@dataclass
class _Plan:
    conflicts: list[SchedulingConflict]
    policy: BufferPolicy
    slots: list[TimeSlot] = field(default_factory=list)
    resources: list[HospitalResource] = field(default_factory=list)
    skipped_preferred: list[uuid.UUID] = field(default_factory=list)
    # the booking day plus any neighbour its buffers reach into
    doctor_ledgers: list[tuple[uuid.UUID, int]] = field(default_factory=list)
    resource_ledgers: dict[uuid.UUID, tuple[uuid.UUID, int]] = field(default_factory=dict)

class ConflictResolver:
    def __init__(self, session: AsyncSession, *, max_retries: int | None = None):
        self.session = session
        self.max_retries = max_retries or settings.BOOKING_MAX_RETRIES
        self.ledgers = LedgerRepository(session)
        self.slots = AvailabilityRepository(session)
        self.appts = AppointmentRepository(session)
        self.rules = BufferRuleRepository(session)
        self.closures = ClosureRepository(session)
        self.resources = ResourceBookingManager(session)

    async def check(self, hospital_id: uuid.UUID, req: BookingRequest) -> list[SchedulingConflict]:
        plan = await self._evaluate(hospital_id, req)
        return plan.conflicts

    async def check_and_reserve(self, hospital_id: uuid.UUID, req: BookingRequest, *, before_commit: BeforeCommit | None = None) -> tuple[Reservation | None, list[SchedulingConflict]]:
        """Returns (reservation, []) on success or (None, conflicts).

        `before_commit` runs inside the booking transaction once the appointment
        row exists, so callers can attach their own state changes atomically.
        The session must not carry pending writes when this is called.
        """
        for attempt in range(1, self.max_retries + 1):
            outcome = await self._attempt(hospital_id, req, before_commit)
            if outcome is not _STALE:
                return outcome
            logger.warning(f"Booking attempt {attempt} for doctor {req.doctor_id} at {req.start_at} lost a version race, retrying")
            await asyncio.sleep(random.uniform(0, 0.02) * attempt)
        raise BookingBusy(f"doctor {req.doctor_id} schedule on {req.start_at.date().isoformat()} kept changing, retry later")

    async def _attempt(self, hospital_id: uuid.UUID, req: BookingRequest, before_commit: BeforeCommit | None):
        plan = await self._evaluate(hospital_id, req)
        if plan.conflicts:
            logger.info(f"Booking for doctor {req.doctor_id} at {req.start_at} rejected with {len(plan.conflicts)} conflict(s)")
            return None, plan.conflicts

        for ledger in plan.doctor_ledgers:
            if not await self.ledgers.bump(*ledger):
                await self.session.rollback()
                return _STALE
        for r in plan.resources:
            if not await self.ledgers.bump(*plan.resource_ledgers[r.id]):
                await self.session.rollback()
                return _STALE

        appt_id = uuid.uuid4()
        released: list[uuid.UUID] = []
        if req.replaces_appointment_id:
            old = await self.appts.get(hospital_id, req.replaces_appointment_id)
            if old is None or old.status != "confirmed":
                await self.session.rollback()
                return None, [SchedulingConflict(type="doctor_unavailable", description="Appointment being rescheduled is no longer confirmed", conflicting_appointment_id=req.replaces_appointment_id)]
            old_doctor, old_day = old.doctor_id, old.start_at.date()
            # the occurrence moves to the replacement
            if not await self.appts.transition(hospital_id, old.id, "confirmed", old.version, status="rescheduled", occurrence_date=None, rescheduled_to_id=appt_id):
                await self.session.rollback()
                return _STALE
            released = await self.slots.release_slots(hospital_id, req.replaces_appointment_id)
            await self.resources.cancel_for_appointment(hospital_id, req.replaces_appointment_id, "rescheduled")
            if old_day != req.start_at.date():
                await self.ledgers.touch(hospital_id, "doctor", old_doctor, old_day)
            await self.session.flush()

        appt = await self.appts.create(
            hospital_id,
            id=appt_id,
            patient_id=req.patient_id,
            doctor_id=req.doctor_id,
            department_id=req.department_id,
            appointment_type=req.appointment_type,
            reason_for_visit=req.reason_for_visit,
            start_at=req.start_at,
            end_at=req.end_at,
            is_telemedicine=all(s.is_telemedicine for s in plan.slots),
            status="confirmed",
            buffer_rule_id=plan.policy.rule_id,
            buffer_before_minutes=plan.policy.before,
            buffer_after_minutes=plan.policy.after,
            cleanup_minutes=plan.policy.cleanup,
            series_id=req.series_id,
            occurrence_date=req.occurrence_date,
            waitlist_entry_id=req.waitlist_entry_id,
            booked_by=req.booked_by,
        )
        slot_ids = [s.id for s in plan.slots]
        claimed = await self.slots.claim_slots(hospital_id, slot_ids, appt.id)
        if claimed != len(slot_ids):
            await self.session.rollback()
            return _STALE

        reserved = []
        for r in plan.resources:
            b = await self.resources.reserve(hospital_id, r, appointment_id=appt.id, start=req.start_at, end=req.end_at, booked_by=req.booked_by, purpose=req.appointment_type)
            reserved.append(ReservedResource(resource_id=r.id, booking_id=b.id, status=b.status))

        if before_commit:
            await before_commit(appt)

        await OutboxService(self.session).enqueue(hospital_id, "APPT_BOOKED", "appointment", appt.id, {
            "doctor_id": str(req.doctor_id),
            "patient_id": str(req.patient_id) if req.patient_id else None,
            "start_at": req.start_at.isoformat(),
            "end_at": req.end_at.isoformat(),
            "resources": [str(x.resource_id) for x in reserved],
            "replaces": str(req.replaces_appointment_id) if req.replaces_appointment_id else None,
        })
        reservation = Reservation(
            appointment_id=appt.id,
            doctor_id=req.doctor_id,
            start_at=req.start_at,
            end_at=req.end_at,
            slot_ids=slot_ids,
            resources=reserved,
            skipped_preferred_resources=plan.skipped_preferred,
            released_slot_ids=[i for i in released if i not in slot_ids],
            buffer_rule_id=plan.policy.rule_id,
        )
        await self.session.commit()
        logger.info(f"Booked appointment {appt.id} doctor={req.doctor_id} {req.start_at}..{req.end_at} slots={len(slot_ids)} resources={len(reserved)}")
        return reservation, []

    # ---- evaluation ----
    async def _evaluate(self, hospital_id: uuid.UUID, req: BookingRequest) -> _Plan:
        start, end = req.start_at, req.end_at
        day = start.date()

        rule = select_buffer_rule(
            await self.rules.candidates(hospital_id, doctor_id=req.doctor_id),
            doctor_id=req.doctor_id, appointment_type=req.appointment_type, department_id=req.department_id,
        )
        policy = BufferPolicy.from_rule(rule)
        lo, hi = padded(start, end, policy.before, policy.after, policy.cleanup)

        # ledger snapshots before any other read: creating a missing row commits
        doctor_ledgers = [
            await self.ledgers.snapshot(hospital_id, "doctor", req.doctor_id, d)
            for d in [day, *sorted({lo.date(), hi.date()} - {day})]
        ]
        wanted = list(dict.fromkeys([*req.required_resources, *req.preferred_resources]))
        known = await self.resources.resources.get_many(hospital_id, wanted)
        resource_ledgers = {}
        for rid in wanted:
            if rid in known:
                resource_ledgers[rid] = await self.ledgers.snapshot(hospital_id, "resource", rid, day)

        plan = _Plan(conflicts=[], policy=policy, doctor_ledgers=doctor_ledgers, resource_ledgers=resource_ledgers)

        for c in await self.closures.for_day(hospital_id, day, req.doctor_id):
            who = "Hospital" if c.doctor_id is None else "Doctor"
            plan.conflicts.append(SchedulingConflict(type="holiday", description=f"{who} closed on {day.isoformat()}" + (f": {c.reason}" if c.reason else "")))

        plan.slots, seen = await self._check_slots(hospital_id, req, plan.conflicts)
        await self._check_buffers(hospital_id, req, plan, seen)
        await self._check_resources(hospital_id, req, plan, known)
        return plan

    async def _check_slots(self, hospital_id: uuid.UUID, req: BookingRequest, conflicts: list[SchedulingConflict]) -> tuple[list[TimeSlot], set[uuid.UUID]]:
        start, end = req.start_at, req.end_at
        seen: set[uuid.UUID] = set()
        if end.date() != start.date():
            conflicts.append(SchedulingConflict(type="doctor_unavailable", description="Appointments cannot span midnight"))
            return [], seen

        covering = [s for s in await self.slots.list_slots(hospital_id, req.doctor_id, start.date()) if s.start_at < end and s.end_at > start]
        if not covering:
            conflicts.append(SchedulingConflict(type="doctor_unavailable", description=f"No availability for doctor between {_hm(start)} and {_hm(end)}"))
            return [], seen

        if covering[0].start_at > start or covering[-1].end_at < end:
            conflicts.append(SchedulingConflict(type="doctor_unavailable", description=f"Requested time {_hm(start)}-{_hm(end)} extends outside the doctor's slots"))
        for prev, nxt in zip(covering, covering[1:]):
            if nxt.start_at != prev.end_at:
                conflicts.append(SchedulingConflict(type="doctor_unavailable", description=f"Gap in availability between {_hm(prev.end_at)} and {_hm(nxt.start_at)}"))
        for s in covering:
            if s.state == "free":
                continue
            if req.replaces_appointment_id and s.appointment_id == req.replaces_appointment_id:
                continue
            if s.appointment_id:
                seen.add(s.appointment_id)
            conflicts.append(SchedulingConflict(
                type="doctor_unavailable",
                description=f"Slot {_hm(s.start_at)}-{_hm(s.end_at)} is already booked",
                conflicting_appointment_id=s.appointment_id,
            ))
        return covering, seen

    async def _check_buffers(self, hospital_id: uuid.UUID, req: BookingRequest, plan: _Plan, seen: set[uuid.UUID]):
        start, end = req.start_at, req.end_at
        policy = plan.policy
        existing = await self.appts.confirmed_for_doctor(
            hospital_id, req.doctor_id, start - timedelta(days=1), end + timedelta(days=1), exclude_id=req.replaces_appointment_id,
        )
        mine = padded(start, end, policy.before, policy.after, policy.cleanup)
        for a in existing:
            if a.id in seen:
                continue
            if overlaps((start, end), (a.start_at, a.end_at)):
                plan.conflicts.append(SchedulingConflict(
                    type="doctor_unavailable",
                    description=f"Doctor already has an appointment {_hm(a.start_at)}-{_hm(a.end_at)}",
                    conflicting_appointment_id=a.id,
                ))
                continue
            theirs = padded(a.start_at, a.end_at, a.buffer_before_minutes, a.buffer_after_minutes, a.cleanup_minutes)
            if overlaps(mine, theirs):
                plan.conflicts.append(SchedulingConflict(
                    type="buffer_violation",
                    description=f"Too close to appointment {_hm(a.start_at)}-{_hm(a.end_at)}, whose buffers block {_hm(theirs[0])}-{_hm(theirs[1])}",
                    conflicting_appointment_id=a.id,
                ))

        if policy.max_consecutive:
            same_day = [(a.start_at, a.end_at) for a in existing if a.start_at.date() == start.date()]
            run = consecutive_run(same_day, (start, end), policy)
            if run > policy.max_consecutive:
                brk = f" without a {policy.required_break}-minute break" if policy.required_break else ""
                plan.conflicts.append(SchedulingConflict(
                    type="buffer_violation",
                    description=f"Would make {run} consecutive appointments{brk}; limit is {policy.max_consecutive}",
                ))

    async def _check_resources(self, hospital_id: uuid.UUID, req: BookingRequest, plan: _Plan, known: dict[uuid.UUID, HospitalResource]):
        required = list(dict.fromkeys(req.required_resources))
        for rid in required:
            r, problem, clashes = await self._resource_state(hospital_id, req, plan, known.get(rid))
            if problem:
                plan.conflicts.append(SchedulingConflict(type="resource_conflict", description=problem, resource_id=rid))
                continue
            for b in clashes:
                plan.conflicts.append(SchedulingConflict(
                    type="resource_conflict",
                    description=f"{r.name} is booked {_hm(b.start_at)}-{_hm(b.end_at)} ({b.status})",
                    conflicting_booking_id=b.id,
                    resource_id=rid,
                ))
            if not clashes:
                plan.resources.append(r)

        for rid in dict.fromkeys(req.preferred_resources):
            if rid in required:
                continue
            r, problem, clashes = await self._resource_state(hospital_id, req, plan, known.get(rid))
            if problem or clashes:
                plan.skipped_preferred.append(rid)
            else:
                plan.resources.append(r)

    async def _resource_state(self, hospital_id: uuid.UUID, req: BookingRequest, plan: _Plan, r: HospitalResource | None) -> tuple[HospitalResource | None, str | None, Sequence]:
        if r is None:
            return None, "Resource does not exist", []
        if not r.is_active:
            return r, f"{r.name} is not active", []
        if req.duration_minutes > (r.max_booking_duration_hours or 0) * 60:
            return r, f"{r.name} cannot be booked for more than {r.max_booking_duration_hours}h", []
        clashes = await self.resources.find_conflicts(
            hospital_id, r, req.start_at, req.end_at,
            cleanup_minutes=plan.policy.cleanup, exclude_appointment_id=req.replaces_appointment_id,
        )
        return r, None, clashes
