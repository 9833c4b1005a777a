import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.recurring.schemas import SeriesCreate, SeriesOut, AppointmentDraft, ExpandRequest, SeriesCancel
from hospital_scheduling.modules.recurring.service import RecurringSeriesService

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> RecurringSeriesService:
    return RecurringSeriesService(session)

def _raise_for(err: str):
    if err == "not_found": raise HTTPException(404, "series not found")
    raise HTTPException(409, err)

@router.post("/recurring", response_model=SeriesOut, dependencies=[Depends(require_scopes("appointments:write"))])
async def create_series(payload: SeriesCreate, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    return await service.create_series(principal.hospital_id, payload, principal.user_id)

@router.get("/recurring", response_model=list[SeriesOut], dependencies=[Depends(require_scopes("appointments:read"))])
async def list_series(
    status: str | None = Query(default=None, pattern="^(active|paused|completed|cancelled)$"),
    patient_id: uuid.UUID | None = None,
    doctor_id: uuid.UUID | None = None,
    principal: Principal = Depends(get_principal),
    service: RecurringSeriesService = Depends(svc),
):
    return await service.list(principal.hospital_id, status=status, patient_id=patient_id, doctor_id=doctor_id)

@router.get("/recurring/{series_id}", response_model=SeriesOut, dependencies=[Depends(require_scopes("appointments:read"))])
async def get_series(series_id: uuid.UUID, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    obj = await service.get(principal.hospital_id, series_id)
    if not obj: raise HTTPException(404, "series not found")
    return obj

@router.post("/recurring/{series_id}/pause", response_model=SeriesOut, dependencies=[Depends(require_scopes("appointments:write"))])
async def pause_series(series_id: uuid.UUID, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    obj, err = await service.pause(principal.hospital_id, series_id)
    if err: _raise_for(err)
    return obj

@router.post("/recurring/{series_id}/resume", response_model=SeriesOut, dependencies=[Depends(require_scopes("appointments:write"))])
async def resume_series(series_id: uuid.UUID, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    obj, err = await service.resume(principal.hospital_id, series_id)
    if err: _raise_for(err)
    return obj

@router.post("/recurring/{series_id}/cancel", response_model=SeriesOut, dependencies=[Depends(require_scopes("appointments:write"))])
async def cancel_series(series_id: uuid.UUID, payload: SeriesCancel | None = None, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    obj, err = await service.cancel(principal.hospital_id, series_id, payload.reason if payload else None)
    if err: _raise_for(err)
    return obj

@router.post("/recurring/{series_id}/expand", response_model=list[AppointmentDraft], dependencies=[Depends(require_scopes("appointments:write"))])
async def expand_series(series_id: uuid.UUID, payload: ExpandRequest | None = None, principal: Principal = Depends(get_principal), service: RecurringSeriesService = Depends(svc)):
    drafts, err = await service.expand(principal.hospital_id, series_id, payload.horizon_date if payload else None)
    if err: _raise_for(err)
    return drafts
