"""Payment webhook reconciliation.

Provider events are logged durably before anything else happens, then mapped
onto the internal payment lattice and applied to the order with status-gated
transitions. Replaying the same event converges on the same stored state, so
recovery from a processing error is a replay from the event log.
"""

import hashlib
import hmac
import json
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from config import ApplicationConfig
from models import (
    NowPaymentsIpn,
    OrderReference,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    StatusMapping,
    WebhookAck,
    WebhookEvent,
)
from utils import Clock, create_contextual_logger, log_exception, utc_now
from utils.errors import EventNotFound, FulfillmentError, MalformedReference, ProvisioningConflict
from utils.metrics import webhook_events
from .order_activation import OrderActivationService
from .order_store import OrderStore
from .payment_store import PaymentStore

SIGNATURE_HEADER = "x-nowpayments-sig"
REFERENCE_PREFIX = "payment-"
_REFERENCE_BODY = re.compile(r"^(\d+)-(.+)$")


def _mapping(payment: PaymentStatus, order: OrderStatus, is_final: bool) -> StatusMapping:
    return StatusMapping(payment_status=payment, order_status=order, is_final=is_final)


_STATUS_MAP: Dict[str, StatusMapping] = {
    "waiting": _mapping(PaymentStatus.PENDING, OrderStatus.PENDING, False),
    "confirming": _mapping(PaymentStatus.PENDING, OrderStatus.PENDING, False),
    "confirmed": _mapping(PaymentStatus.PROCESSING, OrderStatus.PENDING, False),
    "sending": _mapping(PaymentStatus.PROCESSING, OrderStatus.PENDING, False),
    "finished": _mapping(PaymentStatus.PAID, OrderStatus.ACTIVE, True),
    "partially_paid": _mapping(PaymentStatus.PAID, OrderStatus.ACTIVE, True),
    "failed": _mapping(PaymentStatus.FAILED, OrderStatus.FAILED, True),
    "expired": _mapping(PaymentStatus.FAILED, OrderStatus.FAILED, True),
    "cancelled": _mapping(PaymentStatus.CANCELLED, OrderStatus.CANCELLED, True),
    "refunded": _mapping(PaymentStatus.REFUNDED, OrderStatus.CANCELLED, True),
}
_UNKNOWN_STATUS = _mapping(PaymentStatus.PENDING, OrderStatus.PENDING, False)


def map_provider_status(status: Optional[str]) -> StatusMapping:
    """Map a NOWPayments status onto ``{payment_status, order_status, is_final}``."""
    return _STATUS_MAP.get((status or "").strip().lower(), _UNKNOWN_STATUS)


def build_order_reference(user_id: str, now: datetime) -> str:
    return f"{REFERENCE_PREFIX}{int(now.timestamp() * 1000)}-{user_id}"


def parse_order_reference(reference: Optional[str]) -> OrderReference:
    """Parse ``payment-{timestamp_ms}-{user_id}``."""
    if not reference or not reference.startswith(REFERENCE_PREFIX):
        raise MalformedReference(reference)
    match = _REFERENCE_BODY.match(reference[len(REFERENCE_PREFIX):])
    if not match:
        raise MalformedReference(reference)
    return OrderReference(raw=reference, timestamp=int(match.group(1)), user_id=match.group(2))


def _canonical_json(value: Any) -> str:
    """Compact JSON with sorted keys. Decimal numbers keep the literal they were sent as."""
    if isinstance(value, dict):
        items = (f"{json.dumps(k, ensure_ascii=False)}:{_canonical_json(value[k])}" for k in sorted(value))
        return "{" + ",".join(items) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_canonical_json(v) for v in value) + "]"
    if isinstance(value, Decimal):
        return str(value).lower()
    return json.dumps(value, ensure_ascii=False)


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the HMAC-SHA512 signature of an IPN body.

    The raw body is tried first. NOWPayments signs the payload with its keys
    sorted, so a body relayed in another key order is checked against that
    canonical form, with number literals left exactly as received.
    """
    if not signature or not secret:
        return False
    received = signature.strip().lower()
    key = secret.encode("utf-8")

    def matches(message: bytes) -> bool:
        expected = hmac.new(key, message, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, received)

    if matches(raw_body):
        return True
    try:
        payload = json.loads(raw_body, parse_float=Decimal)
    except ValueError:
        return False
    return matches(_canonical_json(payload).encode("utf-8"))


def extract_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> Optional[str]:
    """Caller IP as seen by the edge proxy."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return value.strip()
    return fallback


class PaymentReconciler:
    """Applies NOWPayments IPN events to payments and orders."""

    provider = PaymentProvider.NOWPAYMENTS.value

    def __init__(
        self,
        config: ApplicationConfig,
        payment_store: PaymentStore,
        order_store: OrderStore,
        activation: OrderActivationService,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.payment_store = payment_store
        self.order_store = order_store
        self.activation = activation
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="payment_reconciliation")

    async def handle_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], client_ip: Optional[str] = None
    ) -> WebhookAck:
        """Log, authenticate and apply one webhook delivery. Never raises."""
        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            webhook_events.labels(provider=self.provider, status="invalid_json", signature_ok="false").inc()
            self.logger.warning("Webhook body is not a JSON object", body_size=len(raw_body))
            return WebhookAck(status="error", message="Invalid JSON payload")

        ip = extract_client_ip(headers, client_ip)
        ip_allowed = self.config.skip_webhook_ip_check or ip in self.config.webhook_allowed_ips
        signature_ok = verify_signature(raw_body, headers.get(SIGNATURE_HEADER), self.config.nowpayments_ipn_secret)

        event = await self.payment_store.log_event(
            provider=self.provider,
            event_type=str(payload.get("payment_status") or "unknown"),
            payload=payload,
            signature_ok=signature_ok,
            ip_allowed=ip_allowed,
            client_ip=ip,
        )
        webhook_events.labels(
            provider=self.provider,
            status=event.event_type,
            signature_ok=str(signature_ok).lower(),
        ).inc()

        if not ip_allowed:
            self.logger.warning("Webhook from unlisted IP rejected", event_id=event.id, client_ip=ip)
            await self.payment_store.mark_event_failed(event.id, "source ip not allowed")
            return WebhookAck(status="error", message="Source not allowed")

        if not signature_ok:
            self.logger.warning(
                "Webhook signature invalid",
                event_id=event.id,
                client_ip=ip,
                rejected=self.config.reject_on_bad_signature,
            )
            if self.config.reject_on_bad_signature:
                await self.payment_store.mark_event_failed(event.id, "invalid signature")
                return WebhookAck(status="error", message="Invalid signature")

        return await self._process_event(event)

    async def replay_event(self, event_id: str) -> WebhookAck:
        """Re-apply a logged event, skipping the source checks it already passed or failed."""
        event = await self.payment_store.get_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        self.logger.info("Replaying webhook event", event_id=event_id, retry_count=event.retry_count)
        return await self._process_event(event)

    async def _process_event(self, event: WebhookEvent) -> WebhookAck:
        try:
            message = await self._apply(event.payload, event.signature_ok)
        except Exception as e:
            retry_count = await self.payment_store.mark_event_failed(event.id, str(e))
            log_exception(
                self.logger,
                e,
                "Webhook processing failed",
                serviceName="PaymentReconciler",
                operationName="handle_webhook",
                event_id=event.id,
                retry_count=retry_count,
            )
            if isinstance(e, FulfillmentError):
                return WebhookAck(status="error", message=e.message)
            return WebhookAck(status="error", message="Internal processing error")

        await self.payment_store.mark_event_processed(event.id)
        return WebhookAck(status="success", message=message)

    async def _apply(self, payload: Dict[str, Any], signature_ok: bool) -> str:
        try:
            ipn = NowPaymentsIpn.model_validate(payload)
        except ValidationError as e:
            raise MalformedReference(payload.get("order_id")) from e

        reference = parse_order_reference(ipn.order_id)
        mapping = map_provider_status(ipn.payment_status)

        existing = await self.payment_store.get_by_reference(reference.raw)
        if existing is not None and existing.is_final and existing.status != mapping.payment_status:
            self.logger.info(
                "Payment already final, event ignored",
                reference=reference.raw,
                final_status=existing.status,
                event_status=ipn.payment_status,
            )
            return f"payment already {existing.status}"

        order = await self.order_store.find_by_reference(reference.raw)
        order_id = order.id if order is not None else (existing.order_id if existing else None)

        fields: Dict[str, Any] = {
            "status": mapping.payment_status,
            "is_final": mapping.is_final,
            "raw_payload": payload,
            "signature_ok": signature_ok,
            "user_id": reference.user_id,
            "order_id": order_id,
            "amount": ipn.price_amount,
            "currency": ipn.price_currency,
            "payer_currency": ipn.pay_currency,
            "invoice_uuid": str(ipn.invoice_id) if ipn.invoice_id is not None else None,
            "txid": str(ipn.payment_id) if ipn.payment_id is not None else None,
        }
        if mapping.payment_status == PaymentStatus.PAID.value and (existing is None or existing.paid_at is None):
            fields["paid_at"] = self.clock()
        # never overwrite a stored value with an empty one
        fields = {key: value for key, value in fields.items() if value is not None}

        payment, _ = await self.payment_store.upsert(self.provider, reference.raw, fields)

        if order is None:
            self.logger.warning("No order for payment reference", reference=reference.raw, payment_id=payment.id)
            return "payment recorded without order"
        if not mapping.is_final:
            return f"payment {mapping.payment_status}"

        if mapping.payment_status == PaymentStatus.PAID.value:
            return await self._activate(order.id, order.status)

        failed = await self.activation.fail_order(order.id, OrderStatus(mapping.order_status))
        return f"order {mapping.order_status}" if failed else f"order left {order.status}"

    async def _activate(self, order_id: str, status: str) -> str:
        if status == OrderStatus.ACTIVE.value:
            return "order already active"
        if status != OrderStatus.PENDING.value:
            self.logger.info("Paid order is not pending, activation skipped", order_id=order_id, status=status)
            return f"order left {status}"
        try:
            result = await self.activation.activate_paid_order(order_id)
        except ProvisioningConflict:
            return "activation already in progress"
        return f"order {result.outcome}"
