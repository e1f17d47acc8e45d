"""API routers for the proxy fulfillment service."""

from .admin import router as admin_router
from .health import router as health_router
from .metrics import router as metrics_router
from .orders import router as orders_router
from .proxies import router as proxies_router
from .webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "health_router",
    "metrics_router",
    "orders_router",
    "proxies_router",
    "webhooks_router",
]
