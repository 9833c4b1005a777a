import uuid
from datetime import date
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from hospital_scheduling.core.db import get_session
from hospital_scheduling.core.security import get_principal, require_scopes, Principal
from hospital_scheduling.modules.availability.service import SlotGenerator
from hospital_scheduling.modules.availability.schemas import WindowCreate, WindowOut, SlotGenerateRequest, SlotGenerationOut, SlotOut

router = APIRouter()

def svc(s: AsyncSession = Depends(get_session)) -> SlotGenerator:
    return SlotGenerator(s)

# Staff-maintained weekly windows
@router.post("/availability/windows", response_model=WindowOut, dependencies=[Depends(require_scopes("availability:write"))])
async def create_window(payload: WindowCreate, principal: Principal = Depends(get_principal), service: SlotGenerator = Depends(svc)):
    return await service.create_window(principal.hospital_id, **payload.model_dump())

@router.get("/availability/windows", response_model=list[WindowOut], dependencies=[Depends(require_scopes("availability:read"))])
async def list_windows(doctor_id: uuid.UUID | None = None, principal: Principal = Depends(get_principal), service: SlotGenerator = Depends(svc)):
    return await service.list_windows(principal.hospital_id, doctor_id)

@router.delete("/availability/windows/{window_id}", response_model=WindowOut, dependencies=[Depends(require_scopes("availability:write"))])
async def deactivate_window(window_id: uuid.UUID, principal: Principal = Depends(get_principal), service: SlotGenerator = Depends(svc)):
    obj = await service.deactivate_window(principal.hospital_id, window_id)
    if not obj: raise HTTPException(404, "window not found")
    return obj

# Slots
@router.post("/availability/slots/generate", response_model=SlotGenerationOut, dependencies=[Depends(require_scopes("availability:write"))])
async def generate_slots(payload: SlotGenerateRequest, principal: Principal = Depends(get_principal), service: SlotGenerator = Depends(svc)):
    result = await service.generate_slots(principal.hospital_id, payload.doctor_id, payload.slot_date)
    return {
        "doctor_id": payload.doctor_id,
        "slot_date": payload.slot_date,
        "created": len(result.created_ids),
        "removed": result.removed,
        "slots": result.slots,
    }

@router.get("/availability/slots", response_model=list[SlotOut], dependencies=[Depends(require_scopes("availability:read"))])
async def list_slots(doctor_id: uuid.UUID, slot_date: date, principal: Principal = Depends(get_principal), service: SlotGenerator = Depends(svc)):
    return await service.list_slots(principal.hospital_id, doctor_id, slot_date)
