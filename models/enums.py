"""Enumeration types for fulfillment models."""

from enum import Enum


class OrderStatus(str, Enum):
    """Lifecycle states of a customer order."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    PROCESSING = "processing"
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Internal payment states that provider vocabularies map onto."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentProvider(str, Enum):
    NOWPAYMENTS = "nowpayments"
    WALLET = "wallet"
    TRIAL = "trial"


class ReservationState(str, Enum):
    """States of a quota hold. CONFIRMED and RELEASED are terminal."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class ProxyProtocol(str, Enum):
    HTTP = "http"
    SOCKS5 = "socks5"


class ProxyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    ROTATING = "rotating"


class RotationMode(str, Enum):
    NONE = "none"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ConnectionClass(str, Enum):
    """Free-pool classes, listed in selection priority order."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNCONFIGURED = "unconfigured"


class ProvisioningOutcome(str, Enum):
    ACTIVE = "active"
    PENDING_MANUAL_PROVISIONING = "pending_manual_provisioning"
    ALREADY_ACTIVE = "already_active"


class NotificationType(str, Enum):
    """Events handed to the external notification delivery worker."""

    MANUAL_PROVISIONING_REQUIRED = "manual_provisioning_required"
    ORDER_PROCESSING = "order_processing"
    CONNECTION_NOT_CONFIGURED = "connection_not_configured"
    NO_CONNECTION_AVAILABLE = "no_connection_available"
    CREDENTIAL_NOT_RECORDED = "credential_not_recorded"
    QUOTA_EXHAUSTED_AFTER_PAYMENT = "quota_exhausted_after_payment"
    PROXY_READY = "proxy_ready"
    ORDER_EXPIRED = "order_expired"
    ORDER_RENEWED = "order_renewed"
    RENEWAL_FAILED = "renewal_failed"
