import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.resources.models import HospitalResource, ResourceBooking
from hospital_scheduling.modules.resources.repository import ACTIVE_BOOKING_STATES, ResourceRepository, ResourceBookingRepository
from hospital_scheduling.modules.resources.schemas import ResourceCreate
from hospital_scheduling.modules.scheduling.repository import LedgerRepository
from hospital_scheduling.modules.events.outbox import OutboxService

logger = logging.getLogger(__name__)

VALID_NEXT = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"cancelled"},
    "cancelled": set(),
}

def _now() -> datetime:
    return datetime.now(timezone.utc)

def padded_range(resource: HospitalResource, start: datetime, end: datetime, cleanup_minutes: int = 0) -> tuple[datetime, datetime]:
    buf = timedelta(minutes=resource.booking_buffer_minutes or 0)
    return start - buf, end + buf + timedelta(minutes=cleanup_minutes)

class ResourceBookingManager:
    """Lifecycle of room/equipment reservations tied to an appointment.

    `reserve` and `cancel_for_appointment` run inside the caller's transaction
    (the resolver or the appointment service); the approval/cancel actions
    commit on their own. Cancelling a single resource booking only frees the
    resource: the appointment keeps its slot, so no waitlist pass happens here.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.resources = ResourceRepository(session)
        self.bookings = ResourceBookingRepository(session)
        self.ledgers = LedgerRepository(session)

    # ---- Resources ----
    async def create_resource(self, hospital_id: uuid.UUID, payload: ResourceCreate) -> HospitalResource:
        obj = await self.resources.create(hospital_id, **payload.model_dump(exclude_unset=True))
        await self.session.commit()
        return obj

    async def list_resources(self, hospital_id: uuid.UUID, resource_type: str | None = None):
        return await self.resources.list(hospital_id, resource_type=resource_type)

    async def list_bookings(self, hospital_id: uuid.UUID, **filters):
        return await self.bookings.list(hospital_id, **filters)

    async def get_booking(self, hospital_id: uuid.UUID, booking_id: uuid.UUID) -> ResourceBooking | None:
        return await self.bookings.get(hospital_id, booking_id)

    # ---- Reservation (inside resolver transaction) ----
    async def find_conflicts(self, hospital_id: uuid.UUID, resource: HospitalResource, start: datetime, end: datetime, *, cleanup_minutes: int = 0, exclude_appointment_id: uuid.UUID | None = None) -> list[ResourceBooking]:
        lo, hi = padded_range(resource, start, end, cleanup_minutes)
        return list(await self.bookings.overlapping(hospital_id, resource.id, lo, hi, exclude_appointment_id=exclude_appointment_id))

    async def reserve(self, hospital_id: uuid.UUID, resource: HospitalResource, *, appointment_id: uuid.UUID, start: datetime, end: datetime, booked_by: uuid.UUID | None = None, purpose: str | None = None) -> ResourceBooking:
        status = "pending" if resource.requires_approval else "confirmed"
        return await self.bookings.create(
            hospital_id,
            resource_id=resource.id,
            appointment_id=appointment_id,
            start_at=start,
            end_at=end,
            status=status,
            booked_by=booked_by,
            purpose=purpose,
        )

    async def cancel_for_appointment(self, hospital_id: uuid.UUID, appointment_id: uuid.UUID, reason: str) -> list[ResourceBooking]:
        out = []
        for b in await self.bookings.for_appointment(hospital_id, appointment_id):
            # a booking an approver moved in the meantime is left to that action
            if await self.bookings.transition(hospital_id, b.id, ACTIVE_BOOKING_STATES, b.version, status="cancelled", cancelled_at=_now(), cancel_reason=reason):
                await self.ledgers.touch(hospital_id, "resource", b.resource_id, b.start_at.date())
                out.append(b)
        await self.session.flush()
        return out

    async def _act(self, hospital_id: uuid.UUID, booking_id: uuid.UUID, *, allowed_from: tuple[str, ...], to_status: str, values: dict, event_type: str, payload: Callable[[ResourceBooking], dict]):
        """Guarded status change plus its outbox event, committed together."""
        b = await self.bookings.get(hospital_id, booking_id)
        if not b: return None, "not_found"
        if b.status not in allowed_from or to_status not in VALID_NEXT.get(b.status, set()):
            return None, "invalid_transition"
        resource_id, day = b.resource_id, b.start_at.date()
        if not await self.bookings.transition(hospital_id, booking_id, (b.status,), b.version, status=to_status, **values):
            await self.session.rollback()
            logger.info(f"Resource booking {booking_id} changed concurrently, {to_status} refused")
            return None, "invalid_transition"
        if to_status == "cancelled":
            await self.ledgers.touch(hospital_id, "resource", resource_id, day)
        await OutboxService(self.session).enqueue(hospital_id, event_type, "resource_booking", booking_id, payload(b))
        await self.session.commit()
        return await self.bookings.get(hospital_id, booking_id), None

    # ---- Actions ----
    async def confirm(self, hospital_id: uuid.UUID, booking_id: uuid.UUID, approver_id: uuid.UUID):
        return await self._act(
            hospital_id, booking_id, allowed_from=("pending",), to_status="confirmed",
            values={"approved_by": approver_id, "approved_at": _now()},
            event_type="RESOURCE_BOOKING_CONFIRMED",
            payload=lambda b: {"resource_id": str(b.resource_id), "approved_by": str(approver_id)},
        )

    async def deny(self, hospital_id: uuid.UUID, booking_id: uuid.UUID, approver_id: uuid.UUID, reason: str | None = None):
        return await self._act(
            hospital_id, booking_id, allowed_from=("pending",), to_status="cancelled",
            values={"approved_by": approver_id, "cancelled_at": _now(), "cancel_reason": reason or "approval_denied"},
            event_type="RESOURCE_BOOKING_DENIED",
            payload=lambda b: {"resource_id": str(b.resource_id), "appointment_id": str(b.appointment_id) if b.appointment_id else None},
        )

    async def cancel(self, hospital_id: uuid.UUID, booking_id: uuid.UUID, reason: str | None = None):
        reason = reason or "resource_released"
        b, err = await self._act(
            hospital_id, booking_id, allowed_from=ACTIVE_BOOKING_STATES, to_status="cancelled",
            values={"cancelled_at": _now(), "cancel_reason": reason},
            event_type="RESOURCE_BOOKING_CANCELLED",
            payload=lambda b: {"resource_id": str(b.resource_id), "reason": reason},
        )
        if b is not None:
            logger.info(f"Resource booking {b.id} on resource {b.resource_id} cancelled ({reason})")
        return b, err
