import uuid
import logging
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.modules.scheduling.models import AppointmentBufferRule, ScheduleClosure
from hospital_scheduling.modules.scheduling.repository import BufferRuleRepository, ClosureRepository
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import BookingRequest, BufferRuleCreate, ClosureCreate
from hospital_scheduling.modules.events.outbox import OutboxService

logger = logging.getLogger(__name__)

class SchedulingService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.rules = BufferRuleRepository(session)
        self.closures = ClosureRepository(session)
        self.resolver = ConflictResolver(session)

    async def reserve(self, hospital_id: uuid.UUID, req: BookingRequest):
        return await self.resolver.check_and_reserve(hospital_id, req)

    async def check(self, hospital_id: uuid.UUID, req: BookingRequest):
        return await self.resolver.check(hospital_id, req)

    # ---- Buffer rules ----
    async def create_buffer_rule(self, hospital_id: uuid.UUID, payload: BufferRuleCreate) -> AppointmentBufferRule:
        obj = await self.rules.create(hospital_id, **payload.model_dump())
        await self.session.commit()
        logger.info(f"Buffer rule {obj.id} created doctor={obj.doctor_id} type={obj.appointment_type} department={obj.department_id}")
        return obj

    async def list_buffer_rules(self, hospital_id: uuid.UUID, active_only: bool = False):
        return await self.rules.list(hospital_id, active_only=active_only)

    # ---- Closures ----
    async def create_closure(self, hospital_id: uuid.UUID, payload: ClosureCreate) -> ScheduleClosure:
        obj = await self.closures.create(hospital_id, **payload.model_dump())
        await OutboxService(self.session).enqueue(hospital_id, "SCHEDULE_CLOSURE_CREATED", "schedule_closure", obj.id, {
            "closure_date": obj.closure_date.isoformat(),
            "doctor_id": str(obj.doctor_id) if obj.doctor_id else None,
        })
        await self.session.commit()
        return obj

    async def list_closures(self, hospital_id: uuid.UUID, start: date | None = None, end: date | None = None):
        return await self.closures.list(hospital_id, start=start, end=end)
