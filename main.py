"""
ParcelTrack - Tracking Reconciliation Engine (FastAPI Backend)
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
from sqlalchemy import text
import uvicorn
import logging

from routes.api import register_routes
from parceltrack.database import engine, Base
from parceltrack.config import settings
from parceltrack.errors import CarrierUnavailable, OrderNotFound
from parceltrack.services.events import event_bus
from parceltrack.workers.tracking_worker import (
    start_background_workers,
    stop_background_workers,
    wire_notifications,
)
import parceltrack.models  # noqa: F401  (register tables on Base.metadata)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ParcelTrack API",
    description="Carrier tracking reconciliation engine",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info(f"🚀 Starting ParcelTrack API")
logger.info(f"📊 Environment: {settings.ENV}")
logger.info(f"🚚 Carrier mode: {settings.CARRIER_MODE}")
logger.info(f"🔗 Host: {settings.HOST}:{settings.PORT}")

# Startup config validation (warn only)
if settings.IS_PRODUCTION and settings.JWT_SECRET.strip() in ("", "supersecret_fallback_key_change_in_production"):
    logger.warning("⚠️ JWT_SECRET is default or empty in production. Set a strong JWT_SECRET in environment.")
if settings.CARRIER_MODE == "live" and not settings.CARRIER_BEARER_TOKEN.strip():
    logger.warning("⚠️ CARRIER_BEARER_TOKEN is not set. Carrier calls will be rejected.")
if not settings.SMTP_HOST:
    logger.warning("⚠️ SMTP_HOST is not set. Status-change emails will be skipped.")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(OrderNotFound)
async def order_not_found_handler(request: Request, exc: OrderNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": exc.message})


@app.exception_handler(CarrierUnavailable)
async def carrier_unavailable_handler(request: Request, exc: CarrierUnavailable):
    logger.warning("Carrier unavailable: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Carrier tracking is temporarily unavailable, please try again later"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.IS_DEVELOPMENT else "An error occurred"
        },
    )


# Register all API routes (prefix /api)
register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "database": db_status,
        "environment": settings.ENV,
    }


@app.on_event("startup")
async def startup_tracking_worker() -> None:
    """Wire status-change notifications and start the reconciliation schedule."""
    wire_notifications()
    start_background_workers()


@app.on_event("shutdown")
async def shutdown_tracking_worker() -> None:
    stop_background_workers()
    await event_bus.join()
    logger.info("🛑 Background workers stopped")


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "Welcome to ParcelTrack API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,  # Auto-reload only in development
        log_level=settings.LOG_LEVEL.lower()
    )
