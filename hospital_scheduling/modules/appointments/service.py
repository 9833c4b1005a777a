from __future__ import annotations

import uuid
import logging
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.appointments.models import Appointment
from hospital_scheduling.modules.appointments.repository import AppointmentRepository
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.resources.repository import ResourceBookingRepository
from hospital_scheduling.modules.resources.service import ResourceBookingManager
from hospital_scheduling.modules.scheduling.repository import LedgerRepository
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import BookingRequest
from hospital_scheduling.modules.events.outbox import OutboxService

logger = logging.getLogger(__name__)

VALID_NEXT = {
    "confirmed": {"cancelled", "rescheduled", "completed", "no_show"},
    "rescheduled": set(),
    "cancelled": set(),
    "completed": set(),
    "no_show": set(),
}

def _now() -> datetime:
    return datetime.now(timezone.utc)

class AppointmentService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.appts = AppointmentRepository(session)
        self.slots = AvailabilityRepository(session)
        self.ledgers = LedgerRepository(session)

    async def get(self, hospital_id: uuid.UUID, appt_id: uuid.UUID) -> Appointment | None:
        return await self.appts.get(hospital_id, appt_id)

    async def list(self, hospital_id: uuid.UUID, **filters):
        return await self.appts.list(hospital_id, **filters)

    async def cancel(self, hospital_id: uuid.UUID, appt_id: uuid.UUID, reason: str | None = None, *, notify_waitlist: bool = True):
        appt = await self.appts.get(hospital_id, appt_id)
        if not appt: return None, "not_found"
        if "cancelled" not in VALID_NEXT.get(appt.status, set()):
            return None, "invalid_transition"

        doctor_id, patient_id, start_at, appointment_type = appt.doctor_id, appt.patient_id, appt.start_at, appt.appointment_type
        if not await self.appts.transition(hospital_id, appt_id, appt.status, appt.version, status="cancelled", cancelled_at=_now(), cancel_reason=reason):
            await self.session.rollback()
            logger.info(f"Appointment {appt_id} changed concurrently, cancel refused")
            return None, "invalid_transition"
        await self.ledgers.touch(hospital_id, "doctor", doctor_id, start_at.date())
        freed = await self.slots.release_slots(hospital_id, appt_id)
        await ResourceBookingManager(self.session).cancel_for_appointment(hospital_id, appt_id, reason or "appointment_cancelled")
        await OutboxService(self.session).enqueue(hospital_id, "APPT_CANCELLED", "appointment", appt_id, {
            "doctor_id": str(doctor_id),
            "patient_id": str(patient_id) if patient_id else None,
            "start_at": start_at.isoformat(),
            "reason": reason,
            "freed_slots": [str(i) for i in freed],
        })
        await self.session.commit()
        logger.info(f"Appointment {appt_id} cancelled, freed {len(freed)} slot(s)")

        # matching runs only after the release is durable
        if notify_waitlist:
            await self._offer_freed(hospital_id, freed, appointment_type)
        return await self.appts.get(hospital_id, appt_id), None

    async def reschedule(self, hospital_id: uuid.UUID, appt_id: uuid.UUID, new_start: datetime, duration_minutes: int | None = None, booked_by: uuid.UUID | None = None):
        """Returns (reservation, conflicts, err)."""
        appt = await self.appts.get(hospital_id, appt_id)
        if not appt: return None, [], "not_found"
        if "rescheduled" not in VALID_NEXT.get(appt.status, set()):
            return None, [], "invalid_transition"

        duration = duration_minutes or int((appt.end_at - appt.start_at).total_seconds() // 60)
        held = await ResourceBookingRepository(self.session).for_appointment(hospital_id, appt.id)
        req = BookingRequest(
            patient_id=appt.patient_id,
            doctor_id=appt.doctor_id,
            appointment_type=appt.appointment_type,
            department_id=appt.department_id,
            start_at=new_start,
            duration_minutes=duration,
            required_resources=[b.resource_id for b in held],
            reason_for_visit=appt.reason_for_visit,
            booked_by=booked_by or appt.booked_by,
            series_id=appt.series_id,
            occurrence_date=appt.occurrence_date,
            waitlist_entry_id=appt.waitlist_entry_id,
            replaces_appointment_id=appt.id,
        )
        appointment_type = appt.appointment_type
        reservation, conflicts = await ConflictResolver(self.session).check_and_reserve(hospital_id, req)
        if conflicts:
            return None, conflicts, None
        logger.info(f"Appointment {appt_id} rescheduled to {reservation.appointment_id} at {new_start}")
        await self._offer_freed(hospital_id, reservation.released_slot_ids, appointment_type)
        return reservation, [], None

    async def _offer_freed(self, hospital_id: uuid.UUID, slot_ids: list[uuid.UUID], appointment_type: str | None):
        if not slot_ids:
            return
        from hospital_scheduling.modules.waitlist.service import WaitlistMatcher
        matcher = WaitlistMatcher(self.session)
        for slot_id in slot_ids:
            await matcher.on_slot_freed(hospital_id, slot_id, appointment_type=appointment_type)
