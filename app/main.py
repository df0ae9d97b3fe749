"""
Operations Ingestion Service - FastAPI Application Entry Point

Background ingestion and vectorization pipeline for task/feedback records.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.models.schemas import ErrorDetail, ErrorResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    - Startup: create tables if missing, run scheduler recovery
      (requeue interrupted vectorization, fail jobs whose payload was lost)
    - Shutdown: stop scheduler lanes, close the shared engine
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")

    from app.core.database import close_shared_engine, init_models
    from app.services.ingestion_scheduler import get_ingestion_scheduler, reset_ingestion_scheduler

    try:
        await init_models()
        logger.info("✅ Database tables verified")
    except Exception as e:
        logger.warning(f"⚠️ Database initialization failed: {e} (service will continue)")

    scheduler = get_ingestion_scheduler()
    try:
        await scheduler.start()
        logger.info("✅ Ingestion scheduler started")
    except Exception as e:
        logger.error(f"❌ Ingestion scheduler recovery failed: {e}")

    logger.info(f"🚀 {settings.app_name} started successfully")

    yield

    logger.info(f"Shutting down {settings.app_name}...")

    try:
        await scheduler.stop()
        reset_ingestion_scheduler()
        logger.info("✅ Ingestion scheduler stopped")
    except Exception as e:
        logger.error(f"❌ Failed to stop ingestion scheduler: {e}")

    try:
        await close_shared_engine()
        logger.info("✅ Shared database engine closed successfully")
    except Exception as e:
        logger.error(f"❌ Failed to close shared database engine: {e}")

    logger.info("👋 Shutdown complete")


def create_application() -> FastAPI:
    """
    Application factory pattern.
    Creates and configures the FastAPI application.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Background ingestion and vectorization pipeline",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Register exception handlers
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include API routers
    from app.api.v1 import router as api_v1_router
    app.include_router(api_v1_router, prefix=settings.api_v1_prefix)

    return app


# =============================================================================
# Exception Handlers
# =============================================================================

async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.
    Returns HTTP 400 with detailed error information.
    """
    errors = []
    for error in exc.errors():
        errors.append(
            ErrorDetail(
                field=".".join(str(loc) for loc in error["loc"]),
                message=error["msg"],
                code=error["type"],
            )
        )

    response = ErrorResponse(
        error="validation_error",
        message="Request validation failed",
        details=errors,
        request_id=request.headers.get("X-Request-ID"),
    )

    logger.warning(f"Validation error: {response.model_dump_json()}")

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=response.model_dump(mode="json"),
    )


async def general_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions.
    Returns HTTP 500 with error details while maintaining service availability.
    """
    logger.exception(f"Unexpected error: {exc}")

    response = ErrorResponse(
        error="internal_error",
        message="An unexpected error occurred" if not settings.debug else str(exc),
        request_id=request.headers.get("X-Request-ID"),
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=response.model_dump(mode="json"),
    )


# Create application instance
app = create_application()


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint - service information"""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/health", tags=["Health"])
async def health_check_simple():
    """Simple liveness check for load balancers."""
    return {"status": "ok"}
