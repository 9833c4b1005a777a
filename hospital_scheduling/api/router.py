from fastapi import APIRouter
from hospital_scheduling.modules.availability.router import router as availability_router
from hospital_scheduling.modules.scheduling.router import router as scheduling_router
from hospital_scheduling.modules.appointments.router import router as appointments_router
from hospital_scheduling.modules.resources.router import router as resources_router
from hospital_scheduling.modules.waitlist.router import router as waitlist_router
from hospital_scheduling.modules.recurring.router import router as recurring_router

api_router = APIRouter()
api_router.include_router(availability_router, tags=["availability"])
api_router.include_router(scheduling_router, tags=["scheduling"])
api_router.include_router(appointments_router, tags=["appointments"])
api_router.include_router(resources_router, tags=["resources"])
api_router.include_router(waitlist_router, tags=["waitlist"])
api_router.include_router(recurring_router, tags=["recurring"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
