from datetime import date
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.scheduling.service import SchedulingService
from hospital_scheduling.modules.scheduling.schemas import (
    BookingRequest, Reservation, ConflictReport, BufferRuleCreate, BufferRuleOut, ClosureCreate, ClosureOut,
)

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> SchedulingService:
    return SchedulingService(session)

@router.post(
    "/scheduling/reserve",
    response_model=Reservation,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ConflictReport}},
    dependencies=[Depends(require_scopes("appointments:write"))],
)
async def reserve(payload: BookingRequest, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    # internal provenance fields are not settable from the API
    req = payload.model_copy(update={"series_id": None, "occurrence_date": None, "waitlist_entry_id": None, "replaces_appointment_id": None, "booked_by": principal.user_id})
    reservation, conflicts = await service.reserve(principal.hospital_id, req)
    if conflicts:
        return JSONResponse(status_code=409, content=ConflictReport(conflicts=conflicts).model_dump(mode="json"))
    return reservation

@router.post("/scheduling/check", response_model=ConflictReport, dependencies=[Depends(require_scopes("appointments:read"))])
async def check(payload: BookingRequest, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    return ConflictReport(conflicts=await service.check(principal.hospital_id, payload))

@router.post("/scheduling/buffer-rules", response_model=BufferRuleOut, dependencies=[Depends(require_scopes("scheduling:admin"))])
async def create_buffer_rule(payload: BufferRuleCreate, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    return await service.create_buffer_rule(principal.hospital_id, payload)

@router.get("/scheduling/buffer-rules", response_model=list[BufferRuleOut], dependencies=[Depends(require_scopes("scheduling:read"))])
async def list_buffer_rules(active_only: bool = False, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    return await service.list_buffer_rules(principal.hospital_id, active_only)

@router.post("/scheduling/closures", response_model=ClosureOut, dependencies=[Depends(require_scopes("scheduling:admin"))])
async def create_closure(payload: ClosureCreate, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    return await service.create_closure(principal.hospital_id, payload)

@router.get("/scheduling/closures", response_model=list[ClosureOut], dependencies=[Depends(require_scopes("scheduling:read"))])
async def list_closures(start: date | None = None, end: date | None = None, principal: Principal = Depends(get_principal), service: SchedulingService = Depends(svc)):
    return await service.list_closures(principal.hospital_id, start, end)
