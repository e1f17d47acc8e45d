"""Shared HTTP plumbing for external provider APIs.

Requests are made with a blocking ``requests.Session`` on an executor
thread and awaited from asyncio callers. Idempotent reads are retried with
backoff; calls that create remote state are attempted once.
"""

import asyncio
from collections import namedtuple
from concurrent.futures import Executor
from typing import Any, Dict, Optional

import requests

from utils import create_contextual_logger, get_correlation_id
from utils.connection_state import ConnectionStateManager
from utils.errors import ProviderError
from utils.metrics import device_api_requests

# Result object to pass between sync and async contexts
SyncRequestResult = namedtuple("SyncRequestResult", ["json_data", "error", "status_code"])


class ProviderApiClient:
    """Base class for the device-management and payment provider clients."""

    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: int,
        user_agent: str,
        retry_attempts: int = 1,
        state: Optional[ConnectionStateManager] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.retry_attempts = max(1, retry_attempts)
        self.state = state
        self.executor = executor
        self.logger = create_contextual_logger(__name__, service=f"{self.provider_name}_client")

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _execute_sync_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> SyncRequestResult:
        """Executes a synchronous HTTP request and returns a result object."""
        full_url = endpoint if endpoint.startswith(("http://", "https://")) else self.base_url + endpoint
        headers = {
            "User-Agent": self.user_agent,
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self._auth_headers(),
        }
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            with requests.Session() as session:
                response = session.request(
                    method=method.upper(),
                    url=full_url,
                    json=data,
                    params=params,
                    timeout=self.timeout,
                    headers=headers,
                )
        except requests.exceptions.RequestException as e:
            return SyncRequestResult(json_data=None, error=str(e), status_code=None)

        if not response.ok:
            return SyncRequestResult(
                json_data=None,
                error=f"HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if not response.content:
            return SyncRequestResult(json_data={}, error=None, status_code=response.status_code)
        try:
            return SyncRequestResult(json_data=response.json(), error=None, status_code=response.status_code)
        except ValueError:
            return SyncRequestResult(
                json_data=None,
                error="Response body is not valid JSON",
                status_code=response.status_code,
            )

    @staticmethod
    def _is_retryable(status_code: Optional[int]) -> bool:
        return status_code is None or status_code == 429 or status_code >= 500

    async def _make_async_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        """Run the request off the event loop and raise ``ProviderError`` on failure."""
        if self.state is not None and not await self.state.should_attempt_request():
            raise ProviderError(
                f"{self.provider_name} circuit breaker is open", provider=self.provider_name
            )

        loop = asyncio.get_running_loop()
        correlation_id = get_correlation_id()
        attempts = self.retry_attempts if retry else 1
        result = SyncRequestResult(json_data=None, error="not attempted", status_code=None)

        for attempt in range(1, attempts + 1):
            result = await loop.run_in_executor(
                self.executor, self._execute_sync_request, method, endpoint, data, params, correlation_id
            )
            if result.error is None:
                device_api_requests.labels(service=self.provider_name, method=method, status="success").inc()
                if self.state is not None:
                    await self.state.mark_success()
                return result.json_data

            device_api_requests.labels(service=self.provider_name, method=method, status="error").inc()
            retryable = self._is_retryable(result.status_code)
            if retryable and self.state is not None:
                await self.state.mark_failure()

            self.logger.warning(
                "Provider request failed",
                serviceName=type(self).__name__,
                operationName=f"{method} {endpoint.split('?')[0]}",
                attempt=attempt,
                max_attempts=attempts,
                status_code=result.status_code,
                error=result.error,
            )
            if not retryable or attempt == attempts:
                break
            delay = await self.state.get_backoff_delay() if self.state is not None else 0.5 * attempt
            await asyncio.sleep(delay)

        raise ProviderError(result.error, provider=self.provider_name, status_code=result.status_code)
