"""Service layer for the proxy fulfillment service."""

from .checkout import CheckoutService
from .connection_selector import ConnectionSelector
from .device_api_client import DeviceApiClient
from .health_metrics import HealthMetricsService
from .maintenance import MaintenanceWorker
from .notifications import NotificationService
from .nowpayments_client import NowPaymentsClient
from .order_activation import OrderActivationService
from .order_expiry import OrderExpiryService
from .order_store import OrderStore
from .payment_reconciliation import (
    PaymentReconciler,
    extract_client_ip,
    map_provider_status,
    parse_order_reference,
    verify_signature,
)
from .payment_store import PaymentStore
from .plan_catalog import PlanCatalog
from .provisioning import ProvisioningPipeline
from .proxy_store import ProxyStore
from .quota_manager import QuotaManager
from .redis_client import RedisClient
from .wallet import WalletLedger

__all__ = [
    "CheckoutService",
    "ConnectionSelector",
    "DeviceApiClient",
    "HealthMetricsService",
    "MaintenanceWorker",
    "NotificationService",
    "NowPaymentsClient",
    "OrderActivationService",
    "OrderExpiryService",
    "OrderStore",
    "PaymentReconciler",
    "PaymentStore",
    "PlanCatalog",
    "ProvisioningPipeline",
    "ProxyStore",
    "QuotaManager",
    "RedisClient",
    "WalletLedger",
    "extract_client_ip",
    "map_provider_status",
    "parse_order_reference",
    "verify_signature",
]
