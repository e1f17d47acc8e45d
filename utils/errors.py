"""Error taxonomy for quota, provisioning and payment reconciliation."""

from typing import Any, Dict, List, Optional


class FulfillmentError(Exception):
    """Base class for every domain error raised by the service layer."""

    code = "fulfillment_error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InsufficientQuota(FulfillmentError):
    """Not enough quota. ``available == 0`` is the hard out-of-stock case."""

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        if available <= 0:
            message = "Out of stock. No connections are available right now."
        else:
            message = (
                f"Insufficient quota. Only {available} connection(s) available, "
                f"but {requested} requested."
            )
        super().__init__(message, available=available, requested=requested)

    @property
    def out_of_stock(self) -> bool:
        return self.available <= 0

    @property
    def code(self) -> str:  # type: ignore[override]
        return "out_of_stock" if self.out_of_stock else "insufficient_quota"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 503 if self.out_of_stock else 400


class ReservationNotFound(FulfillmentError):
    code = "reservation_not_found"
    http_status = 404

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"No quota reservation found for order {order_id}", order_id=order_id)


class ReservationConflict(FulfillmentError):
    """A reservation operation raced with, or contradicts, an earlier one."""

    code = "reservation_conflict"
    http_status = 409


class AlreadyFinal(ReservationConflict):
    code = "reservation_already_final"

    def __init__(self, order_id: str, state: str) -> None:
        self.order_id = order_id
        self.state = state
        super().__init__(
            f"Reservation for order {order_id} is already {state}",
            order_id=order_id,
            state=state,
        )


class ProviderError(FulfillmentError):
    """An external API call failed. Safe to retry."""

    code = "provider_error"
    http_status = 502

    def __init__(self, message: str, provider: str = "unknown", status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message, provider=provider, status_code=status_code)


class NoConnectionAvailable(FulfillmentError):
    code = "no_connection_available"
    http_status = 503

    def __init__(self, message: str = "No physical connection is available for provisioning") -> None:
        super().__init__(message)


class MalformedReference(FulfillmentError):
    code = "malformed_reference"
    http_status = 400

    def __init__(self, reference: Optional[str]) -> None:
        self.reference = reference
        super().__init__(f"Cannot parse order reference: {reference!r}", reference=reference)


class PartialProvisioningFailure(FulfillmentError):
    """Credentials were issued by the device API but could not be recorded."""

    code = "partial_provisioning_failure"
    http_status = 500

    def __init__(self, order_id: str, connection_id: str, grant_ids: List[str], cause: str) -> None:
        self.order_id = order_id
        self.connection_id = connection_id
        self.grant_ids = grant_ids
        super().__init__(
            f"Credential issued but not recorded for order {order_id}: {cause}",
            order_id=order_id,
            connection_id=connection_id,
            grant_ids=grant_ids,
        )


class ProvisioningConflict(FulfillmentError):
    code = "provisioning_conflict"
    http_status = 409


class OrderNotFound(FulfillmentError):
    code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class InvalidOrderState(FulfillmentError):
    code = "invalid_order_state"
    http_status = 409


class InsufficientFunds(FulfillmentError):
    code = "insufficient_funds"
    http_status = 402

    def __init__(self, balance_cents: int, required_cents: int) -> None:
        self.balance_cents = balance_cents
        self.required_cents = required_cents
        super().__init__(
            "Insufficient wallet balance",
            balance=balance_cents / 100,
            required=required_cents / 100,
        )


class PlanNotFound(FulfillmentError):
    code = "plan_not_found"
    http_status = 404

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan {plan_id} not found", plan_id=plan_id)


class ProxyNotFound(FulfillmentError):
    code = "proxy_not_found"
    http_status = 404

    def __init__(self, proxy_id: str) -> None:
        self.proxy_id = proxy_id
        super().__init__(f"Proxy {proxy_id} not found", proxy_id=proxy_id)


class RotationUnavailable(FulfillmentError):
    """The proxy has no IP-change link to call."""

    code = "rotation_unavailable"
    http_status = 409


class InvalidRotationSettings(FulfillmentError):
    code = "invalid_rotation_settings"
    http_status = 400


class EventNotFound(FulfillmentError):
    code = "event_not_found"
    http_status = 404

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Webhook event {event_id} not found", event_id=event_id)


class ConnectionNotFound(FulfillmentError):
    code = "connection_not_found"
    http_status = 404

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} not found", connection_id=connection_id)
