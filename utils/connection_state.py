"""Connection state management for external provider APIs.

Each outbound client (device API, payment provider) owns one state manager
that tracks consecutive failures and implements a circuit breaker.
"""

import time
from asyncio import Lock
from typing import Any, Dict, Optional

from .logging import create_contextual_logger


class ConnectionStateManager:
    """Tracks connectivity to one remote service and implements circuit breaker logic."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 3,
        initial_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_backoff: float = 60.0,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff
        self._lock = Lock()
        self.logger = create_contextual_logger(__name__, remote_service=service_name)

        self._is_connected = True
        self._consecutive_failures = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None

        self._circuit_open = False
        self._circuit_open_time: Optional[float] = None

    @classmethod
    def for_device_api(cls, config: Any) -> "ConnectionStateManager":
        return cls(
            "device_api",
            failure_threshold=config.device_api_failure_threshold,
            initial_delay=config.device_api_initial_error_delay,
            backoff_multiplier=config.device_api_error_backoff_multiplier,
            max_backoff=config.device_api_max_backoff,
        )

    def _backoff_delay(self) -> float:
        # Caller holds the lock
        if self._consecutive_failures == 0:
            return 0.0
        delay = self.initial_delay * (self.backoff_multiplier ** (self._consecutive_failures - 1))
        return min(delay, self.max_backoff)

    async def mark_success(self) -> None:
        """Mark a successful remote operation."""
        async with self._lock:
            was_circuit_open = self._circuit_open
            consecutive_failures_before = self._consecutive_failures

            self._is_connected = True
            self._consecutive_failures = 0
            self._last_success_time = time.time()
            self._circuit_open = False
            self._circuit_open_time = None

            if was_circuit_open:
                self.logger.info(
                    "Circuit breaker CLOSED - Connection recovered",
                    previous_failures=consecutive_failures_before,
                    downtime_seconds=int(time.time() - (self._last_failure_time or 0)),
                )
            elif consecutive_failures_before > 0:
                self.logger.info(
                    "Connection stabilized after failures",
                    recovered_from_failures=consecutive_failures_before,
                )

    async def mark_failure(self) -> None:
        """Mark a failed remote operation."""
        async with self._lock:
            self._is_connected = False
            self._consecutive_failures += 1
            self._last_failure_time = time.time()

            if self._consecutive_failures >= self.failure_threshold:
                was_already_open = self._circuit_open
                self._circuit_open = True
                self._circuit_open_time = time.time()

                if not was_already_open:
                    self.logger.warning(
                        "Circuit breaker OPENED - Too many consecutive failures",
                        consecutive_failures=self._consecutive_failures,
                        next_retry_delay_seconds=self._backoff_delay(),
                    )
            else:
                self.logger.debug(
                    "Connection failure recorded",
                    consecutive_failures=self._consecutive_failures,
                    failures_until_circuit_open=self.failure_threshold - self._consecutive_failures,
                )

    async def get_backoff_delay(self) -> float:
        """Calculate the appropriate backoff delay based on failure history."""
        async with self._lock:
            return self._backoff_delay()

    async def should_attempt_request(self) -> bool:
        """Determine if a request should be attempted based on circuit breaker state."""
        async with self._lock:
            if not self._circuit_open:
                return True

            if self._circuit_open_time is not None:
                time_since_open = time.time() - self._circuit_open_time
                backoff_delay = self._backoff_delay()
                if time_since_open >= backoff_delay:
                    self.logger.info(
                        "Circuit breaker entering HALF-OPEN state - Allowing test request",
                        time_since_open_seconds=int(time_since_open),
                        backoff_delay_seconds=backoff_delay,
                    )
                    return True
                self.logger.debug(
                    "Circuit breaker still OPEN - Request blocked",
                    remaining_wait_seconds=int(backoff_delay - time_since_open),
                )

            return False

    async def get_connection_info(self) -> Dict[str, Any]:
        """Get current connection state information."""
        async with self._lock:
            return {
                "service": self.service_name,
                "is_connected": self._is_connected,
                "consecutive_failures": self._consecutive_failures,
                "circuit_open": self._circuit_open,
                "last_success_time": self._last_success_time,
                "last_failure_time": self._last_failure_time,
                "current_backoff_delay": self._backoff_delay(),
            }

    async def is_healthy(self) -> bool:
        """Check if the connection is considered healthy."""
        async with self._lock:
            return self._is_connected and not self._circuit_open
