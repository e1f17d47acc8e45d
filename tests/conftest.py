"""Test utilities and fixtures for the proxy fulfillment service tests."""

import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from config import ApplicationConfig
from main import create_app, wire_services
from models import (
    ActionLink,
    ConnectionClass,
    ConnectionDetails,
    Invoice,
    Order,
    OrderStatus,
    PendingPaymentMetadata,
    Plan,
    ProxyGrant,
    ProxyProtocol,
    TrialMetadata,
)
from services import RedisClient
from services.payment_reconciliation import build_order_reference
from utils.connection_state import ConnectionStateManager

TEST_ENCRYPTION_KEY = "0f" * 32
TEST_ADMIN_KEY = "test-admin-key"
TEST_IPN_SECRET = "test-ipn-secret"
ALLOWED_WEBHOOK_IP = "51.75.77.69"
FROZEN_AT = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
NEW_IP = "198.51.100.7"
CHANGE_URL = "https://device.test/actions/changeip/abc"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime = FROZEN_AT) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def mock_config() -> ApplicationConfig:
    """Configuration for tests, independent of the process environment."""
    return ApplicationConfig(
        public_base_url="https://shop.test",
        device_api_url="https://device.test/api/v1",
        device_api_key="test-device-key",
        device_api_retry_attempts=2,
        device_api_initial_error_delay=0.01,
        device_api_max_backoff=0.05,
        nowpayments_api_url="https://payments.test/v1",
        nowpayments_api_key="test-nowpayments-key",
        nowpayments_ipn_secret=TEST_IPN_SECRET,
        admin_api_key=TEST_ADMIN_KEY,
        proxy_encryption_key=TEST_ENCRYPTION_KEY,
        maintenance_enabled=False,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    """In-process Redis with Lua support, isolated per test."""
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def redis_client(mock_config: ApplicationConfig, fake_redis: FakeAsyncRedis) -> RedisClient:
    return RedisClient(mock_config, client=fake_redis)


def _grant(connection_id: str, protocol: ProxyProtocol, login: str, password: str, *args: Any) -> ProxyGrant:
    return ProxyGrant(
        id=f"grant-{protocol.value}-{connection_id}",
        protocol=protocol,
        ip="203.0.113.10",
        port=8080 if protocol == ProxyProtocol.HTTP else 1080,
        hostname="proxy.device.test",
        login=login,
        password=password,
    )


@pytest.fixture
def mock_device_client() -> AsyncMock:
    """Device API client that grants every request."""
    client = AsyncMock()
    client.state = ConnectionStateManager("device_api")
    client.grant_proxy_access = AsyncMock(side_effect=_grant)
    client.delete_proxy_access = AsyncMock(return_value=None)
    client.get_connection = AsyncMock(
        side_effect=lambda connection_id: ConnectionDetails(connection_id=connection_id, country="DE")
    )
    client.get_action_links = AsyncMock(return_value=[])
    client.create_action_link = AsyncMock(
        return_value=ActionLink(id="link-1", action="changeip", link=CHANGE_URL)
    )
    client.update_connection_settings = AsyncMock(return_value={})
    client.trigger_ip_change = AsyncMock(return_value={"new_ip": NEW_IP})
    client.list_connections = AsyncMock(return_value=[])
    return client


@pytest.fixture
def mock_nowpayments() -> AsyncMock:
    """NOWPayments client that opens an invoice for every request."""

    async def create_invoice(**kwargs: Any) -> Invoice:
        return Invoice(
            id="inv-1",
            invoice_url="https://payments.test/invoice/inv-1",
            order_reference=kwargs["order_reference"],
        )

    client = AsyncMock()
    client.create_invoice = AsyncMock(side_effect=create_invoice)
    return client


@pytest.fixture
def app(
    mock_config: ApplicationConfig,
    redis_client: RedisClient,
    mock_device_client: AsyncMock,
    mock_nowpayments: AsyncMock,
    clock: FrozenClock,
) -> FastAPI:
    """Application with the full service graph on fakeredis and mocked providers."""
    application = create_app(use_lifespan=False)
    wire_services(
        application,
        mock_config,
        redis_client,
        device_client=mock_device_client,
        nowpayments=mock_nowpayments,
        clock=clock,
    )
    return application


@pytest.fixture
def services(app: FastAPI) -> Any:
    return app.state


@pytest_asyncio.fixture(scope="function")
async def test_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for the app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def seed_plan(services: Any) -> Callable[..., Awaitable[Plan]]:
    async def _seed(plan_id: str = "plan-basic", price: str = "10.00", duration_days: int = 30) -> Plan:
        plan = Plan(id=plan_id, name="Basic mobile proxy", price_usd_month=Decimal(price), duration_days=duration_days)
        return await services.plan_catalog.upsert_plan(plan)

    return _seed


@pytest.fixture
def seed_connections(services: Any) -> Callable[..., Awaitable[None]]:
    async def _seed(*connection_ids: str, connection_class: ConnectionClass = ConnectionClass.ACTIVE) -> None:
        for connection_id in connection_ids:
            await services.connection_selector.register_connection(connection_id, connection_class, connection_id)

    return _seed


@pytest.fixture
def create_order(services: Any, clock: FrozenClock) -> Callable[..., Awaitable[Order]]:
    """Persist an order, optionally with a live quota hold."""

    async def _create(
        user_id: str = "user-1",
        order_id: Optional[str] = None,
        total: str = "10.00",
        quantity: int = 1,
        status: OrderStatus = OrderStatus.PENDING,
        reserve: bool = True,
        **fields: Any,
    ) -> Order:
        now = clock()
        is_trial = Decimal(total) == 0
        order = Order(
            id=order_id or f"order-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            plan_id="plan-basic",
            status=status,
            quantity=quantity,
            total_amount=Decimal(total),
            reference=None if is_trial else build_order_reference(user_id, now),
            created_at=now,
            updated_at=now,
            metadata=TrialMetadata() if is_trial else PendingPaymentMetadata(payment_provider="nowpayments"),
            **fields,
        )
        await services.order_store.create(order)
        if reserve:
            await services.quota_manager.reserve_quota(order.id, user_id, quantity)
        return order

    return _create


@pytest.fixture
def queued_notifications(mock_config: ApplicationConfig, fake_redis: FakeAsyncRedis) -> Callable[[], Awaitable[List[Dict[str, Any]]]]:
    async def _read() -> List[Dict[str, Any]]:
        raw = await fake_redis.lrange(mock_config.notification_queue, 0, -1)
        return [json.loads(item) for item in reversed(raw)]

    return _read
