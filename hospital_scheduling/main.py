import time
import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from hospital_scheduling.core.config import settings
from hospital_scheduling.core.errors import SchedulingError
from hospital_scheduling.core.logging import setup_logging, request_id_ctx
from hospital_scheduling.core.db import init_models
from hospital_scheduling.api.router import api_router
from hospital_scheduling.platform.provider_registry import registry
from hospital_scheduling.modules.events.outbox import run_outbox_relay
from hospital_scheduling.modules.waitlist.service import run_waitlist_sweeper
from hospital_scheduling.modules.recurring.service import run_series_expander

setup_logging()
app = FastAPI(title=settings.APP_NAME)
logger = logging.getLogger(__name__)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", "-")
    request_id_ctx.set(rid)
    response = await call_next(request)
    return response

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000
    logger.info(f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {process_time:.2f}ms")
    return response

@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} for {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An internal server error occurred."},
    )

BACKGROUND_LOOPS = {
    "outbox": run_outbox_relay,
    "waitlist_sweeper": run_waitlist_sweeper,
    "series_expander": run_series_expander,
}

@app.on_event("startup")
async def on_startup():
    await init_models()
    app.state.tasks = []
    if settings.BACKGROUND_WORKERS_ENABLED:
        for name, loop in BACKGROUND_LOOPS.items():
            app.state.tasks.append(asyncio.create_task(loop(), name=name))

@app.on_event("shutdown")
async def on_shutdown():
    for task in getattr(app.state, "tasks", []):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await registry.close()

app.include_router(api_router, prefix=settings.API_PREFIX)
