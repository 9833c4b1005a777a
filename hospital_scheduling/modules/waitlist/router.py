import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.waitlist.schemas import WaitlistCreate, WaitlistOut, SweepOut
from hospital_scheduling.modules.waitlist.service import WaitlistMatcher
from hospital_scheduling.modules.scheduling.schemas import Reservation, ConflictReport

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> WaitlistMatcher:
    return WaitlistMatcher(session)

def _raise_for(err: str):
    if err == "not_found": raise HTTPException(404, "waitlist entry not found")
    if err == "offer_expired": raise HTTPException(410, "offer expired")
    raise HTTPException(409, err)

@router.post("/waitlist", response_model=WaitlistOut, dependencies=[Depends(require_scopes("waitlist:write"))])
async def create_entry(payload: WaitlistCreate, principal: Principal = Depends(get_principal), service: WaitlistMatcher = Depends(svc)):
    return await service.create_entry(principal.hospital_id, payload)

@router.get("/waitlist", response_model=list[WaitlistOut], dependencies=[Depends(require_scopes("waitlist:read"))])
async def list_entries(
    status: str | None = Query(default=None, pattern="^(active|notified|booked|expired|cancelled)$"),
    doctor_id: uuid.UUID | None = None,
    principal: Principal = Depends(get_principal),
    service: WaitlistMatcher = Depends(svc),
):
    # ranked: the first entry is the next to be offered
    return await service.list_entries(principal.hospital_id, status, doctor_id)

@router.post("/waitlist/sweep", response_model=SweepOut, dependencies=[Depends(require_scopes("waitlist:admin"))])
async def sweep(principal: Principal = Depends(get_principal), service: WaitlistMatcher = Depends(svc)):
    return await service.sweep_expired(principal.hospital_id)

@router.post("/waitlist/{entry_id}/confirm", response_model=Reservation, responses={409: {"model": ConflictReport}}, dependencies=[Depends(require_scopes("waitlist:write"))])
async def confirm_offer(entry_id: uuid.UUID, principal: Principal = Depends(get_principal), service: WaitlistMatcher = Depends(svc)):
    reservation, conflicts, err = await service.confirm_offer(principal.hospital_id, entry_id)
    if err: _raise_for(err)
    if conflicts:
        return JSONResponse(status_code=409, content=ConflictReport(conflicts=conflicts).model_dump(mode="json"))
    return reservation

@router.post("/waitlist/{entry_id}/decline", response_model=WaitlistOut, dependencies=[Depends(require_scopes("waitlist:write"))])
async def decline_offer(entry_id: uuid.UUID, principal: Principal = Depends(get_principal), service: WaitlistMatcher = Depends(svc)):
    obj, err = await service.decline_offer(principal.hospital_id, entry_id)
    if err: _raise_for(err)
    return obj

@router.post("/waitlist/{entry_id}/cancel", response_model=WaitlistOut, dependencies=[Depends(require_scopes("waitlist:write"))])
async def cancel_entry(entry_id: uuid.UUID, principal: Principal = Depends(get_principal), service: WaitlistMatcher = Depends(svc)):
    obj, err = await service.cancel_entry(principal.hospital_id, entry_id)
    if err: _raise_for(err)
    return obj
