"""Data models for the proxy fulfillment service.

This module contains all Pydantic models used throughout the application,
ensuring strict type safety and runtime validation."""

from .enums import (
    ConnectionClass,
    NotificationType,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    ProvisioningOutcome,
    ProxyProtocol,
    ProxyStatus,
    ReservationState,
    RotationMode,
)

from .quota import (
    AvailabilityResult,
    DeductResult,
    QuotaReservation,
    QuotaStatus,
    ReservationResult,
    ReservationStatus,
)

from .orders import (
    ManualProvisioningMetadata,
    Order,
    OrderMetadata,
    PendingPaymentMetadata,
    Plan,
    ProvisionedMetadata,
    RotationConfig,
    TrialMetadata,
)

from .connections import (
    ActionLink,
    Connection,
    ConnectionDetails,
    DeviceConnection,
    ProvisioningResult,
    ProxyGrant,
    ProxyRecord,
    SelectedConnection,
    SyncSummary,
)

from .payments import (
    Invoice,
    NowPaymentsIpn,
    OrderReference,
    Payment,
    StatusMapping,
    WebhookAck,
    WebhookEvent,
)

from .messaging import NotificationMessage

from .api import (
    AdminActivateRequest,
    AutoRenewRequest,
    AutoRenewResponse,
    CheckoutRequest,
    CheckoutResponse,
    ProxyView,
    QuotaUpdateRequest,
    RegisterConnectionRequest,
    RotationSettingsRequest,
    SweepResult,
    TrialRequest,
)

__all__ = [
    # Enums
    "ConnectionClass",
    "NotificationType",
    "OrderStatus",
    "PaymentProvider",
    "PaymentStatus",
    "ProvisioningOutcome",
    "ProxyProtocol",
    "ProxyStatus",
    "ReservationState",
    "RotationMode",
    # Quota models
    "AvailabilityResult",
    "DeductResult",
    "QuotaReservation",
    "QuotaStatus",
    "ReservationResult",
    "ReservationStatus",
    # Order models
    "ManualProvisioningMetadata",
    "Order",
    "OrderMetadata",
    "PendingPaymentMetadata",
    "Plan",
    "ProvisionedMetadata",
    "RotationConfig",
    "TrialMetadata",
    # Connection models
    "ActionLink",
    "Connection",
    "ConnectionDetails",
    "DeviceConnection",
    "ProvisioningResult",
    "ProxyGrant",
    "ProxyRecord",
    "SelectedConnection",
    "SyncSummary",
    # Payment models
    "Invoice",
    "NowPaymentsIpn",
    "OrderReference",
    "Payment",
    "StatusMapping",
    "WebhookAck",
    "WebhookEvent",
    # Messaging models
    "NotificationMessage",
    # API models
    "AdminActivateRequest",
    "AutoRenewRequest",
    "AutoRenewResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "ProxyView",
    "QuotaUpdateRequest",
    "RegisterConnectionRequest",
    "RotationSettingsRequest",
    "SweepResult",
    "TrialRequest",
]
