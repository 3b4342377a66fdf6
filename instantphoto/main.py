"""Main FastAPI application for InstantPhoto"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from instantphoto.api import admin, bookings, health, notifications, photographers, requests
from instantphoto.config import settings
from instantphoto.db.database import AsyncSessionLocal, close_db, init_db
from instantphoto.exceptions import InstantPhotoError
from instantphoto.middleware.logging import RequestLoggingMiddleware
from instantphoto.services.expiry import ExpiryWorker
from instantphoto.services.geocoding import create_geocoder
from instantphoto.services.notifications import create_notification_channel
from instantphoto.services.payment_processor import create_payment_processor
from instantphoto.services.sms import GuestSMSService
from instantphoto.utils.logging import setup_logging

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info("Starting InstantPhoto application...")

    issues = settings.validate_configuration()
    for warning in issues["warnings"]:
        logger.warning(f"Configuration: {warning}")
    for error in issues["errors"]:
        logger.error(f"Configuration: {error}")

    await init_db()

    app.state.notification_channel = create_notification_channel()
    app.state.payment_processor = create_payment_processor()
    app.state.geocoder = create_geocoder()
    app.state.sms = GuestSMSService()

    stop_event = asyncio.Event()
    sweeper_task = None
    if settings.enable_expiry_sweeper:
        worker = ExpiryWorker(AsyncSessionLocal, app.state.notification_channel, sms=app.state.sms)
        sweeper_task = asyncio.create_task(worker.run(stop_event))

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down InstantPhoto application...")
    stop_event.set()
    if sweeper_task is not None:
        await sweeper_task
    await app.state.notification_channel.close()
    await close_db()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="InstantPhoto API",
    description="""
    ## On-demand photographer dispatch

    Guests request a photo shoot at their current location. Nearby photographers
    receive time-boxed offers, exactly one of them gets the job, and payment is
    held in escrow until the guest confirms delivery.

    ### Workflow
    1. **Submit Request** → quota checked, request stored with an expiry
    2. **Dispatch** → ranked photographers receive offers in waves
    3. **Accept** → first accept wins, fees computed, payment authorized
    4. **Shoot & Deliver** → photographer starts and delivers photos
    5. **Confirm** → guest confirms, the hold is captured once
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)

# Configure middleware (order matters - last added runs first)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.get("/status", response_class=JSONResponse)
async def api_status() -> dict[str, Any]:
    """API status endpoint for programmatic access"""
    return {
        "name": "InstantPhoto API",
        "version": "0.1.0",
        "status": "operational",
        "dispatch_mode": settings.dispatch_mode,
        "docs": "/docs" if settings.app_debug else None,
    }


# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(
    requests.router,
    prefix="/api/v1/requests",
    tags=["requests"]
)
app.include_router(
    photographers.router,
    prefix="/api/v1/photographers",
    tags=["photographers"]
)
app.include_router(
    bookings.router,
    prefix="/api/v1/bookings",
    tags=["bookings"]
)
app.include_router(
    notifications.router,
    prefix="/api/v1/notifications",
    tags=["notifications"]
)
app.include_router(
    admin.router,
    prefix="/api/v1/admin",
    tags=["admin"]
)


@app.exception_handler(InstantPhotoError)
async def instant_photo_error_handler(request: Request, exc: InstantPhotoError):
    """Render business-rule failures with their mapped status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.app_debug else "An error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "instantphoto.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
        log_level=settings.log_level.lower(),
    )
