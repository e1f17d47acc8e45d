"""Main application entry point for the proxy fulfillment service."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import ApplicationConfig, load_config
from middleware import CorrelationMiddleware
from routers import (
    admin_router,
    health_router,
    metrics_router,
    orders_router,
    proxies_router,
    webhooks_router,
)
from services import (
    CheckoutService,
    ConnectionSelector,
    DeviceApiClient,
    HealthMetricsService,
    MaintenanceWorker,
    NotificationService,
    NowPaymentsClient,
    OrderActivationService,
    OrderExpiryService,
    OrderStore,
    PaymentReconciler,
    PaymentStore,
    PlanCatalog,
    ProvisioningPipeline,
    ProxyStore,
    QuotaManager,
    RedisClient,
    WalletLedger,
)
from utils import Clock, configure_logging, get_logger, set_correlation_id, utc_now
from utils.crypto import PasswordCipher
from utils.errors import FulfillmentError


def wire_services(
    app: FastAPI,
    config: ApplicationConfig,
    redis_client: RedisClient,
    executor: Optional[ThreadPoolExecutor] = None,
    device_client: Any = None,
    nowpayments: Any = None,
    clock: Clock = utc_now,
) -> None:
    """Build the service graph and publish it on ``app.state``.

    Provider clients may be passed in already constructed; otherwise the
    HTTP clients are created on ``executor``.
    """
    if device_client is None:
        device_client = DeviceApiClient(config, executor=executor)
    if nowpayments is None:
        nowpayments = NowPaymentsClient(config, executor=executor)

    cipher = PasswordCipher(config.proxy_encryption_key)
    notifications = NotificationService(config, redis_client)
    quota_manager = QuotaManager(config, redis_client, clock=clock)
    order_store = OrderStore(config, redis_client, clock=clock)
    payment_store = PaymentStore(config, redis_client, clock=clock)
    connection_selector = ConnectionSelector(config, redis_client, clock=clock)
    proxy_store = ProxyStore(redis_client, device_client=device_client, order_store=order_store, clock=clock)
    pipeline = ProvisioningPipeline(
        config,
        redis_client,
        order_store,
        connection_selector,
        proxy_store,
        device_client,
        notifications,
        cipher,
        clock=clock,
    )
    wallet = WalletLedger(redis_client, clock=clock)
    expiry = OrderExpiryService(
        order_store,
        proxy_store,
        connection_selector,
        quota_manager,
        device_client,
        notifications,
        wallet=wallet,
        clock=clock,
    )
    activation = OrderActivationService(
        order_store,
        quota_manager,
        connection_selector,
        pipeline,
        expiry,
        notifications,
        clock=clock,
    )
    plan_catalog = PlanCatalog(redis_client)
    checkout = CheckoutService(
        config,
        plan_catalog,
        order_store,
        quota_manager,
        payment_store,
        wallet,
        nowpayments,
        activation,
        clock=clock,
    )
    maintenance = MaintenanceWorker(config, quota_manager, expiry)

    app.state.config = config
    app.state.redis_client = redis_client
    app.state.device_client = device_client
    app.state.quota_manager = quota_manager
    app.state.order_store = order_store
    app.state.payment_store = payment_store
    app.state.plan_catalog = plan_catalog
    app.state.connection_selector = connection_selector
    app.state.proxy_store = proxy_store
    app.state.activation = activation
    app.state.checkout = checkout
    app.state.reconciler = PaymentReconciler(config, payment_store, order_store, activation, clock=clock)
    app.state.maintenance = maintenance
    app.state.health_metrics = HealthMetricsService(
        config,
        redis_client,
        quota_manager,
        connection_selector,
        device_client.state,
        maintenance,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect Redis, build the services and run the maintenance loops."""
    config = load_config()
    configure_logging(config.log_level, json_output=config.log_json)
    logger = get_logger(__name__)
    set_correlation_id()

    # Provider HTTP calls use blocking requests sessions
    executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider_worker")
    redis_client = RedisClient(config)

    try:
        logger.info("Starting services...")
        await redis_client.connect()
        wire_services(app, config, redis_client, executor)

        if config.maintenance_enabled:
            await app.state.maintenance.start()
        logger.info("All services are running.")

        yield

    finally:
        logger.info("Shutting down services...")
        maintenance = getattr(app.state, "maintenance", None)
        if maintenance is not None:
            await maintenance.stop()

        logger.info("Shutting down thread pool...")
        executor.shutdown(wait=True)
        logger.info("Thread pool shut down.")

        await redis_client.disconnect()
        logger.info("All services stopped successfully.")


async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Proxy Fulfillment Service",
        description="Quota reservation, payment reconciliation and proxy provisioning",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(webhooks_router)
    app.include_router(orders_router)
    app.include_router(proxies_router)
    app.include_router(admin_router)
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    config = load_config()
    uvicorn.run(app, host=config.server_host, port=config.server_port)
