"""Request dependencies shared by the routers.

Services are constructed once in the application lifespan and read from
``app.state``. Caller identity comes from headers set by the upstream
gateway; authentication itself happens there.
"""

import hmac

from fastapi import Depends, HTTPException, Request, status

from config import ApplicationConfig
from services import (
    CheckoutService,
    ConnectionSelector,
    DeviceApiClient,
    HealthMetricsService,
    OrderActivationService,
    PaymentReconciler,
    PaymentStore,
    ProxyStore,
    QuotaManager,
)


def get_config(request: Request) -> ApplicationConfig:
    return request.app.state.config  # type: ignore[no-any-return]


def get_health_service(request: Request) -> HealthMetricsService:
    """Dependency to get health service from application state."""
    return request.app.state.health_metrics  # type: ignore[no-any-return]


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout  # type: ignore[no-any-return]


def get_activation_service(request: Request) -> OrderActivationService:
    return request.app.state.activation  # type: ignore[no-any-return]


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler  # type: ignore[no-any-return]


def get_quota_manager(request: Request) -> QuotaManager:
    return request.app.state.quota_manager  # type: ignore[no-any-return]


def get_connection_selector(request: Request) -> ConnectionSelector:
    return request.app.state.connection_selector  # type: ignore[no-any-return]


def get_device_client(request: Request) -> DeviceApiClient:
    return request.app.state.device_client  # type: ignore[no-any-return]


def get_proxy_store(request: Request) -> ProxyStore:
    return request.app.state.proxy_store  # type: ignore[no-any-return]


def get_payment_store(request: Request) -> PaymentStore:
    return request.app.state.payment_store  # type: ignore[no-any-return]


def get_user_id(request: Request, config: ApplicationConfig = Depends(get_config)) -> str:
    """Customer id forwarded by the auth gateway."""
    user_id = request.headers.get(config.user_id_header)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {config.user_id_header} header",
        )
    return user_id


def require_admin(request: Request, config: ApplicationConfig = Depends(get_config)) -> None:
    provided = request.headers.get(config.api_key_header) or ""
    if not config.admin_api_key or not hmac.compare_digest(provided, config.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
