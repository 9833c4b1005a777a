import uuid
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.appointments.schemas import AppointmentOut, CancelRequest, RescheduleRequest
from hospital_scheduling.modules.appointments.service import AppointmentService
from hospital_scheduling.modules.scheduling.schemas import Reservation, ConflictReport

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> AppointmentService:
    return AppointmentService(session)

def _raise_for(err: str):
    if err == "not_found": raise HTTPException(404, "appointment not found")
    raise HTTPException(409, err)

@router.get("/appointments/{appt_id}", response_model=AppointmentOut, dependencies=[Depends(require_scopes("appointments:read"))])
async def get_appointment(appt_id: uuid.UUID, principal: Principal = Depends(get_principal), service: AppointmentService = Depends(svc)):
    obj = await service.get(principal.hospital_id, appt_id)
    if not obj: raise HTTPException(404, "appointment not found")
    return obj

@router.get("/appointments", response_model=list[AppointmentOut], dependencies=[Depends(require_scopes("appointments:read"))])
async def list_appointments(
    doctor_id: uuid.UUID | None = None,
    patient_id: uuid.UUID | None = None,
    series_id: uuid.UUID | None = None,
    status: str | None = Query(default=None, pattern="^(confirmed|cancelled|rescheduled|completed|no_show)$"),
    day: date | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    service: AppointmentService = Depends(svc),
):
    return await service.list(principal.hospital_id, doctor_id=doctor_id, patient_id=patient_id, series_id=series_id, status=status, day=day, limit=limit, offset=offset)

@router.post("/appointments/{appt_id}/cancel", response_model=AppointmentOut, dependencies=[Depends(require_scopes("appointments:write"))])
async def cancel_appointment(appt_id: uuid.UUID, payload: CancelRequest | None = None, principal: Principal = Depends(get_principal), service: AppointmentService = Depends(svc)):
    obj, err = await service.cancel(principal.hospital_id, appt_id, payload.reason if payload else None)
    if err: _raise_for(err)
    return obj

@router.post("/appointments/{appt_id}/reschedule", response_model=Reservation, responses={409: {"model": ConflictReport}}, dependencies=[Depends(require_scopes("appointments:write"))])
async def reschedule_appointment(appt_id: uuid.UUID, payload: RescheduleRequest, principal: Principal = Depends(get_principal), service: AppointmentService = Depends(svc)):
    reservation, conflicts, err = await service.reschedule(principal.hospital_id, appt_id, payload.start_at, payload.duration_minutes, principal.user_id)
    if err: _raise_for(err)
    if conflicts:
        return JSONResponse(status_code=409, content=ConflictReport(conflicts=conflicts).model_dump(mode="json"))
    return reservation
