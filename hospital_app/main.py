# hospital_app/main.py
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from hospital_app.config import get_settings
from hospital_app.core.logging import setup_logging
from hospital_app.database import create_tables
from hospital_app.errors import HospitalError
from hospital_app.limiter import limiter
from hospital_app.routers import appointments, doctors, health, logs, ot_cases, patients, schedule, slots
from hospital_app.services.email_service import BookingEmailNotifier
from hospital_app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    create_tables()

    notifier = NotificationService()
    email_notifier = BookingEmailNotifier.from_settings()
    if email_notifier:
        email_notifier.register(notifier)
    app.state.notifier = notifier
    logger.info("Application startup complete")
    yield
    logger.info("Application shutdown")


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(HospitalError)
async def hospital_error_handler(request: Request, exc: HospitalError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(doctors.router, prefix="/api/v1")
app.include_router(patients.router, prefix="/api/v1")
app.include_router(schedule.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(ot_cases.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("hospital_app.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
