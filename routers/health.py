"""Health check router for the proxy fulfillment service."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from services import HealthMetricsService
from utils import get_logger
from .dependencies import get_health_service

router = APIRouter(prefix="/health", tags=["health"])
logger = get_logger(__name__)


def _unhealthy(error: Exception) -> Dict[str, Any]:
    return {
        "status": "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "unknown",
        "uptime_seconds": 0,
        "redis_connected": False,
        "device_api_available": False,
        "components": {
            "health_service": {"status": "unhealthy", "error": str(error)}
        },
    }


@router.get("/", response_model=Dict[str, Any])
async def health_check(
    health_service: HealthMetricsService = Depends(get_health_service),
) -> Dict[str, Any]:
    """Get application health status."""
    try:
        return await health_service.get_health_status()
    except Exception as e:
        logger.error(
            "Health check failed",
            error=str(e),
            endpoint="/health/",
        )
        # Return a degraded health status instead of failing completely
        return _unhealthy(e)


@router.get("/detailed", response_model=Dict[str, Any])
async def detailed_health_check(
    health_service: HealthMetricsService = Depends(get_health_service),
) -> Dict[str, Any]:
    """Get detailed health status with quota and pool figures."""
    try:
        health_status = await health_service.get_health_status()
        metrics_data = await health_service.get_metrics_data()

        return {
            **health_status,
            "metrics": metrics_data,
        }
    except Exception as e:
        logger.error(
            "Detailed health check failed",
            error=str(e),
            endpoint="/health/detailed",
        )
        return {
            **_unhealthy(e),
            "metrics": {
                "error": "Failed to retrieve metrics data",
                "details": str(e)
            },
        }
