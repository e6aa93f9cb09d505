"""
BFAST OMS - FastAPI Backend
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import uvicorn
import logging

from routes.api import register_routes
from oms.database import engine, Base
from oms.config import settings
from oms.workers.scheduler import start_background_workers, stop_background_workers
import oms.models  # noqa: F401  (registers tables on Base.metadata)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="BFAST OMS API",
    description="Order sync and shipment tracking API",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info("🚀 Starting BFAST OMS API")
logger.info(f"   Environment: {settings.ENV}")


# Add exception handler for validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": jsonable_errors(exc),
            "message": "Validation error: Please check your request format"
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic error contexts may hold exception objects
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# Add global exception handler so clients never see a stack trace
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


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)
logger.info(f"✅ CORS configured for {len(settings.ALLOWED_ORIGINS)} origin(s)")

# Register all API routes (prefix /api)
register_routes(app, settings)


@app.get("/api/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "api",
        "db": db_status,
        "environment": settings.ENV,
        "production": settings.IS_PRODUCTION,
        "scheduler": settings.SCHEDULER_ENABLED,
    }


@app.on_event("startup")
async def startup_sync_scheduler() -> None:
    """Start the hourly order sync (first pass runs immediately)."""
    start_background_workers()


@app.on_event("shutdown")
async def shutdown_sync_scheduler() -> None:
    await stop_background_workers()


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.IS_DEVELOPMENT)
