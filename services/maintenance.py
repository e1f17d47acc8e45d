"""Background maintenance loops.

Two periodic jobs run next to the API: the reservation sweep that releases
abandoned checkout holds, and order expiry.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, List

from config import ApplicationConfig
from utils import clear_correlation_id, create_contextual_logger, set_correlation_id
from .order_expiry import OrderExpiryService
from .quota_manager import QuotaManager


class MaintenanceWorker:
    """Runs the periodic sweeps until stopped."""

    def __init__(
        self,
        config: ApplicationConfig,
        quota_manager: QuotaManager,
        expiry_service: OrderExpiryService,
    ) -> None:
        self.config = config
        self.quota_manager = quota_manager
        self.expiry_service = expiry_service
        self.logger = create_contextual_logger(__name__, service="maintenance")

        self._running = False
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the maintenance loops."""
        if self._running:
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_periodically(
                    "reservation_sweep", self.config.reservation_sweep_interval, self.sweep_reservations
                )
            ),
            asyncio.create_task(
                self._run_periodically("order_expiry", self.config.order_expiry_interval, self.expire_orders)
            ),
        ]
        self.logger.info(
            "Maintenance worker started",
            reservation_sweep_interval=self.config.reservation_sweep_interval,
            order_expiry_interval=self.config.order_expiry_interval,
        )

    async def stop(self) -> None:
        """Stop the maintenance loops."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Maintenance worker stopped")

    async def sweep_reservations(self) -> int:
        return await self.quota_manager.release_expired_reservations()

    async def expire_orders(self) -> int:
        return len(await self.expiry_service.expire_due_orders())

    async def _run_periodically(self, job: str, interval: int, func: Callable[[], Awaitable[int]]) -> None:
        while self._running:
            set_correlation_id(f"{job}-{uuid.uuid4()}")
            try:
                processed = await func()
                if processed:
                    self.logger.info("Maintenance job completed", job=job, processed=processed)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Maintenance job failed", job=job, error=str(e))
            finally:
                clear_correlation_id()

            await asyncio.sleep(interval)
