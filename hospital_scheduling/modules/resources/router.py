import uuid
from datetime import date, datetime
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.resources.schemas import ResourceCreate, ResourceOut, ResourceBookingOut, ResourceBookingAction
from hospital_scheduling.modules.resources.service import ResourceBookingManager

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> ResourceBookingManager:
    return ResourceBookingManager(session)

def _raise_for(err: str):
    if err == "not_found": raise HTTPException(404, "resource booking not found")
    raise HTTPException(409, err)

@router.post("/resources", response_model=ResourceOut, dependencies=[Depends(require_scopes("resources:write"))])
async def create_resource(payload: ResourceCreate, principal: Principal = Depends(get_principal), service: ResourceBookingManager = Depends(svc)):
    return await service.create_resource(principal.hospital_id, payload)

@router.get("/resources", response_model=list[ResourceOut], dependencies=[Depends(require_scopes("resources:read"))])
async def list_resources(
    resource_type: str | None = Query(default=None, pattern="^(room|equipment|vehicle)$"),
    principal: Principal = Depends(get_principal),
    service: ResourceBookingManager = Depends(svc),
):
    return await service.list_resources(principal.hospital_id, resource_type)

@router.get("/resources/bookings", response_model=list[ResourceBookingOut], dependencies=[Depends(require_scopes("resources:read"))])
async def list_bookings(
    resource_id: uuid.UUID | None = None,
    status: str | None = Query(default=None, pattern="^(pending|confirmed|cancelled)$"),
    day: date | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    service: ResourceBookingManager = Depends(svc),
):
    return await service.list_bookings(
        principal.hospital_id, resource_id=resource_id, status=status,
        day=datetime(day.year, day.month, day.day) if day else None, limit=limit, offset=offset,
    )

@router.post("/resources/bookings/{booking_id}/approve", response_model=ResourceBookingOut, dependencies=[Depends(require_scopes("resources:approve"))])
async def approve_booking(booking_id: uuid.UUID, principal: Principal = Depends(get_principal), service: ResourceBookingManager = Depends(svc)):
    obj, err = await service.confirm(principal.hospital_id, booking_id, principal.user_id)
    if err: _raise_for(err)
    return obj

@router.post("/resources/bookings/{booking_id}/deny", response_model=ResourceBookingOut, dependencies=[Depends(require_scopes("resources:approve"))])
async def deny_booking(booking_id: uuid.UUID, payload: ResourceBookingAction | None = None, principal: Principal = Depends(get_principal), service: ResourceBookingManager = Depends(svc)):
    obj, err = await service.deny(principal.hospital_id, booking_id, principal.user_id, payload.reason if payload else None)
    if err: _raise_for(err)
    return obj

@router.post("/resources/bookings/{booking_id}/cancel", response_model=ResourceBookingOut, dependencies=[Depends(require_scopes("resources:write"))])
async def cancel_booking(booking_id: uuid.UUID, payload: ResourceBookingAction | None = None, principal: Principal = Depends(get_principal), service: ResourceBookingManager = Depends(svc)):
    obj, err = await service.cancel(principal.hospital_id, booking_id, payload.reason if payload else None)
    if err: _raise_for(err)
    return obj
