# clinic_scheduling/main.py
import os
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import settings
from .database import init_db
from .errors import SchedulingError
from .jobs.scheduler import start_scheduler
from .services import notifications
from .services.booking import SchedulingService

# Routers
from .routers.appointments import router as appointments_router
from .routers.slots import router as slots_router

# ──────────────────────────────────────────────────────────────────────────────
# LOGGING
# Levels from environment variables: LOG_LEVEL, SQLA_LOG_LEVEL, UVICORN_LOG_LEVEL
# ──────────────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logging.getLogger("sqlalchemy.engine").setLevel(
    getattr(logging, os.getenv("SQLA_LOG_LEVEL", "WARNING"), logging.WARNING)
)
logging.getLogger("uvicorn.error").setLevel(
    getattr(logging, os.getenv("UVICORN_LOG_LEVEL", "INFO"), logging.INFO)
)

logger = logging.getLogger(__name__)

# error code -> HTTP status
ERROR_STATUS = {
    "invalid_interval": 422,
    "past_slot": 422,
    "invalid_argument": 422,
    "outside_booking_window": 422,
    "slot_conflict": 409,
    "scheduling_conflict": 409,
    "slot_unavailable": 409,
    "invalid_transition": 409,
    "scheduling_timeout": 503,
    "not_found": 404,
}


async def scheduling_error_handler(request: Request, exc: SchedulingError):
    status_code = ERROR_STATUS.get(exc.code, 400)
    if status_code >= 500:
        logger.warning("%s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(service: Optional[SchedulingService] = None) -> FastAPI:
    """
    Builds the HTTP adapter around `service`. Without one, the default
    service (settings.DATABASE_URL, facility clock) is used and startup
    creates the tables and the background jobs.
    """
    owns_service = service is None
    if service is None:
        service = SchedulingService()
        notifications.register(service.bus)

    app = FastAPI(title=settings.APP_NAME)
    app.state.service = service
    app.state.scheduler = None

    app.add_exception_handler(SchedulingError, scheduling_error_handler)
    app.include_router(slots_router)
    app.include_router(appointments_router)

    @app.on_event("startup")
    def on_startup():
        if owns_service:
            init_db()
            if settings.ENABLE_JOBS:
                app.state.scheduler = start_scheduler(service)
        logger.info("Startup complete: %s (%s)", settings.APP_NAME, settings.ENV)

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)

    @app.get("/")
    def root():
        return {"ok": True, "app": settings.APP_NAME, "env": settings.ENV, "tz": settings.TIMEZONE}

    return app


app = create_app()
