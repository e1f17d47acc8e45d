"""Metrics router for the proxy fulfillment service."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Response

from services import HealthMetricsService
from utils import get_logger
from .dependencies import get_health_service

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = get_logger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/", response_class=Response)
async def prometheus_metrics(
    health_service: HealthMetricsService = Depends(get_health_service),
) -> Response:
    """Get Prometheus metrics in text format."""
    try:
        return Response(content=health_service.get_prometheus_metrics(), media_type=PROMETHEUS_CONTENT_TYPE)
    except Exception as e:
        logger.error(
            "Failed to retrieve Prometheus metrics",
            error=str(e),
            endpoint="/metrics/",
        )
        return Response(
            content=f"# ERROR: Failed to retrieve metrics - {str(e)}\n",
            media_type=PROMETHEUS_CONTENT_TYPE,
            status_code=503
        )


@router.get("/json", response_model=Dict[str, Any])
async def json_metrics(
    health_service: HealthMetricsService = Depends(get_health_service),
) -> Dict[str, Any]:
    """Get quota, pool and queue metrics in JSON format."""
    try:
        return await health_service.get_metrics_data()
    except Exception as e:
        logger.error(
            "Failed to retrieve JSON metrics",
            error=str(e),
            endpoint="/metrics/json",
        )
        return {
            "error": "Failed to retrieve metrics data",
            "details": str(e),
            "status": "service_unavailable"
        }
