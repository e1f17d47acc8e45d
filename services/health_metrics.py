"""Health and metrics service for the proxy fulfillment service.

Health covers Redis and the device API circuit breaker. Metrics combine the
live quota and pool figures with the Prometheus registry.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from prometheus_client import generate_latest

from config import ApplicationConfig
from utils import create_contextual_logger
from utils.connection_state import ConnectionStateManager
from utils.metrics import quota_available
from .connection_selector import ConnectionSelector
from .maintenance import MaintenanceWorker
from .quota_manager import QuotaManager
from .redis_client import RedisClient


class HealthMetricsService:
    """Service for health monitoring and metrics."""

    def __init__(
        self,
        config: ApplicationConfig,
        redis_client: RedisClient,
        quota_manager: QuotaManager,
        connection_selector: ConnectionSelector,
        device_state: ConnectionStateManager,
        maintenance: Optional[MaintenanceWorker] = None,
    ) -> None:
        self.config = config
        self.redis_client = redis_client
        self.quota_manager = quota_manager
        self.connection_selector = connection_selector
        self.device_state = device_state
        self.maintenance = maintenance
        self.logger = create_contextual_logger(__name__, service="health_metrics")
        self._start_time = time.time()

    async def get_health_status(self) -> Dict[str, Any]:
        """Overall status: healthy, degraded (device API circuit open) or unhealthy (no Redis)."""
        redis_health = await self.redis_client.health_check()
        redis_ok = redis_health.get("status") == "healthy"
        device_ok = await self.device_state.is_healthy()

        if redis_ok and device_ok:
            status = "healthy"
        elif redis_ok:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.config.app_version,
            "uptime_seconds": int(time.time() - self._start_time),
            "redis_connected": redis_ok,
            "device_api_available": device_ok,
            "components": {
                "redis": redis_health,
                "device_api": await self.device_state.get_connection_info(),
                "maintenance": {
                    "running": self.maintenance.running if self.maintenance is not None else False,
                },
            },
        }

    async def get_metrics_data(self) -> Dict[str, Any]:
        quota = await self.quota_manager.get_quota_status()
        quota_available.set(quota.available)
        return {
            "quota": quota.model_dump(),
            "connection_pool": await self.connection_selector.pool_counts(),
            "notification_queue_length": await self.redis_client.get_queue_length(
                self.config.notification_queue
            ),
            "uptime_seconds": int(time.time() - self._start_time),
        }

    def get_prometheus_metrics(self) -> str:
        return generate_latest().decode("utf-8")
