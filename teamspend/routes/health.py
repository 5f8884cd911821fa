# ==== HEALTH CHECK ROUTES ==== #

"""
Dependency health for TeamSpend: database, Redis cache and the advisory
provider's circuit breaker and cooldown state.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.tracing import get_tracer
from teamspend.services.advisory import AdvisoryAdapter, get_advisory_adapter
from teamspend.storage.db import check_database
from teamspend.storage.redis import check_redis


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)


@router.get("/health", response_model=Dict[str, Any])
async def get_system_health(
    advisory: AdvisoryAdapter = Depends(get_advisory_adapter)
) -> Dict[str, Any]:
    """
    Report dependency health.

    The database is the only hard dependency; Redis and the advisory
    provider are reported but never make the service unhealthy.

    Returns:
        Dict[str, Any]: Status per dependency, 503 when the database is down
    """
    with tracer.start_as_current_span("health_check_endpoint"):
        try:
            database_ok = await check_database()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Database health check failed", error=str(e))
            database_ok = False

        health_data = {
            "status": "ok" if database_ok else "unhealthy",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if database_ok else "disconnected",
            "redis": await check_redis(),
            "advisory": advisory.get_stats(),
        }

        if not database_ok:
            return JSONResponse(status_code=503, content=health_data)
        return health_data
