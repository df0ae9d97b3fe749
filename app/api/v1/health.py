"""
Health Check Endpoints

GET /api/v1/health     - shallow, no database access
GET /api/v1/health/db  - deep: API, Database, Ingestion Scheduler

Timeout: 5 seconds per component.
"""
import asyncio
import logging
import time

from fastapi import APIRouter

from app.core.config import settings
from app.models.schemas import ComponentHealth, ComponentStatus, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

HEALTH_CHECK_TIMEOUT = 5


async def check_api_health() -> ComponentHealth:
    """Check API component health"""
    start = time.time()
    latency = (time.time() - start) * 1000
    return ComponentHealth(
        name="API",
        status=ComponentStatus.HEALTHY,
        latency_ms=round(latency, 2),
        message="API is responding",
    )


async def check_database_health() -> ComponentHealth:
    """Run SELECT 1 against the Job/Record Store database."""
    start = time.time()
    try:
        from app.core.database import test_connection

        connected = await test_connection()
        latency = (time.time() - start) * 1000
        return ComponentHealth(
            name="Database",
            status=ComponentStatus.HEALTHY if connected else ComponentStatus.UNAVAILABLE,
            latency_ms=round(latency, 2),
            message="Database connected" if connected else "Database unavailable",
        )
    except Exception as e:
        latency = (time.time() - start) * 1000
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth(
            name="Database",
            status=ComponentStatus.UNAVAILABLE,
            latency_ms=round(latency, 2),
            message=str(e),
        )


async def check_scheduler_health() -> ComponentHealth:
    """Report lane activity of the Ingestion Scheduler."""
    from app.services.ingestion_scheduler import get_ingestion_scheduler

    stats = get_ingestion_scheduler().lane_stats()
    return ComponentHealth(
        name="Ingestion Scheduler",
        status=ComponentStatus.HEALTHY,
        message=(
            f"{stats['load_lanes']} load lanes, {stats['vectorize_lanes']} vectorize lanes, "
            f"{stats['cached_payloads']} cached payloads"
        ),
    )


def determine_overall_status(components: dict[str, ComponentHealth]) -> str:
    """
    - healthy: All components are healthy
    - unhealthy: the API itself is unavailable
    - degraded: anything else
    """
    statuses = [c.status for c in components.values()]

    if all(s == ComponentStatus.HEALTHY for s in statuses):
        return "healthy"
    api = components.get("api")
    if api is None or api.status == ComponentStatus.UNAVAILABLE:
        return "unhealthy"
    return "degraded"


async def check_with_timeout(
    check_func,
    component_name: str,
    timeout_seconds: float = HEALTH_CHECK_TIMEOUT
) -> ComponentHealth:
    """Execute a health check, UNAVAILABLE on timeout."""
    try:
        return await asyncio.wait_for(check_func(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Health check timeout for {component_name} (>{timeout_seconds}s)")
        return ComponentHealth(
            name=component_name,
            status=ComponentStatus.UNAVAILABLE,
            latency_ms=timeout_seconds * 1000,
            message=f"Health check timeout (>{timeout_seconds}s)",
        )


@router.get("", summary="Shallow Health Check")
async def health_check_shallow():
    """Liveness only; does not touch the database."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/db", response_model=HealthResponse, summary="Deep Health Check")
async def health_check_deep() -> HealthResponse:
    components = {
        "api": await check_with_timeout(check_api_health, "API"),
        "database": await check_with_timeout(check_database_health, "Database"),
        "scheduler": await check_with_timeout(check_scheduler_health, "Ingestion Scheduler"),
    }

    overall_status = determine_overall_status(components)
    logger.info(f"Deep health check: {overall_status}")

    return HealthResponse(
        status=overall_status,
        version=settings.app_version,
        environment=settings.environment,
        components=components,
    )
