"""Payment rows and the durable webhook event log.

Payment ids are derived from ``provider`` and the order reference, so the
same provider event always lands on the same row no matter how often it is
delivered.
"""

import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from config import ApplicationConfig
from models import Payment, WebhookEvent
from utils import Clock, create_contextual_logger, from_iso, utc_now
from utils.hashes import decode_bool, encode_fields
from .redis_client import RedisClient

PAYMENT_PREFIX = "payment:"
PAYMENT_REF_PREFIX = "payment:ref:"
EVENT_PREFIX = "webhook_event:"
EVENT_LOG_KEY = "webhook_events"
EVENT_LOG_MAX = 10000

_PAYMENT_NAMESPACE = uuid.UUID("6f1c2a4e-8a37-4cf1-9a8d-3b0f0c6d2e51")


def payment_id_for(provider: str, reference: str) -> str:
    return str(uuid.uuid5(_PAYMENT_NAMESPACE, f"{provider}:{reference}"))


def _opt(data: Dict[str, str], key: str) -> Optional[str]:
    return data.get(key) or None


def _decode_payment(data: Dict[str, str]) -> Payment:
    return Payment(
        id=data["id"],
        provider=data["provider"],
        reference=data["reference"],
        order_id=_opt(data, "order_id"),
        user_id=_opt(data, "user_id"),
        status=data.get("status") or "pending",
        is_final=decode_bool(data.get("is_final")),
        amount=Decimal(data["amount"]) if data.get("amount") else None,
        currency=_opt(data, "currency"),
        invoice_uuid=_opt(data, "invoice_uuid"),
        invoice_url=_opt(data, "invoice_url"),
        txid=_opt(data, "txid"),
        payer_currency=_opt(data, "payer_currency"),
        signature_ok=decode_bool(data["signature_ok"]) if data.get("signature_ok") else None,
        raw_payload=json.loads(data["raw_payload"]) if data.get("raw_payload") else {},
        paid_at=from_iso(data.get("paid_at")),
        created_at=from_iso(data["created_at"]),
        updated_at=from_iso(data.get("updated_at") or data["created_at"]),
    )


def _decode_event(data: Dict[str, str]) -> WebhookEvent:
    return WebhookEvent(
        id=data["id"],
        provider=data["provider"],
        event_type=data.get("event_type") or "",
        signature_ok=decode_bool(data.get("signature_ok")),
        ip_allowed=decode_bool(data.get("ip_allowed")),
        client_ip=_opt(data, "client_ip"),
        payload=json.loads(data["payload"]) if data.get("payload") else {},
        received_at=from_iso(data["received_at"]),
        processed_at=from_iso(data.get("processed_at")),
        processing_error=_opt(data, "processing_error"),
        retry_count=int(data.get("retry_count") or 0),
    )


class PaymentStore:
    """Redis-backed payments and webhook event log."""

    def __init__(self, config: ApplicationConfig, redis_client: RedisClient, clock: Clock = utc_now) -> None:
        self.config = config
        self.redis_client = redis_client
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="payment_store")

    async def upsert(self, provider: str, reference: str, fields: Dict[str, Any]) -> Tuple[Payment, bool]:
        """Insert or update the payment for ``reference``.

        Identity fields and ``created_at`` are written only on insert. Returns the
        stored payment and whether this call created it.
        """
        payment_id = payment_id_for(provider, reference)
        key = f"{PAYMENT_PREFIX}{payment_id}"
        now = self.clock()
        identity = encode_fields({"id": payment_id, "provider": provider, "reference": reference, "created_at": now})
        updates = encode_fields({**fields, "updated_at": now})

        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            for field, value in identity.items():
                pipe.hsetnx(key, field, value)
            pipe.hset(key, mapping=updates)
            pipe.set(f"{PAYMENT_REF_PREFIX}{reference}", payment_id)
            results = await pipe.execute()

        created = bool(results[0])
        payment = _decode_payment(await client.hgetall(key))
        self.logger.info(
            "Payment recorded" if created else "Payment updated",
            serviceName="PaymentStore",
            operationName="upsert",
            payment_id=payment_id,
            provider=provider,
            reference=reference,
            status=payment.status,
            is_final=payment.is_final,
        )
        return payment, created

    async def get(self, payment_id: str) -> Optional[Payment]:
        data = await self.redis_client.client.hgetall(f"{PAYMENT_PREFIX}{payment_id}")
        return _decode_payment(data) if data else None

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        payment_id = await self.redis_client.client.get(f"{PAYMENT_REF_PREFIX}{reference}")
        if not payment_id:
            return None
        return await self.get(payment_id)

    async def log_event(
        self,
        provider: str,
        event_type: str,
        payload: Dict[str, Any],
        signature_ok: bool,
        ip_allowed: bool,
        client_ip: Optional[str],
    ) -> WebhookEvent:
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            provider=provider,
            event_type=event_type,
            signature_ok=signature_ok,
            ip_allowed=ip_allowed,
            client_ip=client_ip,
            payload=payload,
            received_at=self.clock(),
        )
        key = f"{EVENT_PREFIX}{event.id}"
        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=encode_fields(event.model_dump()))
            # trimmed ids would otherwise leave their hashes behind forever
            pipe.expire(key, self.config.webhook_event_retention_days * 86400)
            pipe.lpush(EVENT_LOG_KEY, event.id)
            pipe.ltrim(EVENT_LOG_KEY, 0, EVENT_LOG_MAX - 1)
            await pipe.execute()
        return event

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        data = await self.redis_client.client.hgetall(f"{EVENT_PREFIX}{event_id}")
        return _decode_event(data) if data else None

    async def recent_events(self, limit: int = 50) -> List[WebhookEvent]:
        events = []
        for event_id in await self.redis_client.client.lrange(EVENT_LOG_KEY, 0, limit - 1):
            event = await self.get_event(event_id)
            if event is not None:
                events.append(event)
        return events

    async def mark_event_processed(self, event_id: str) -> None:
        await self.redis_client.client.hset(
            f"{EVENT_PREFIX}{event_id}",
            mapping=encode_fields({"processed_at": self.clock(), "processing_error": None}),
        )

    async def mark_event_failed(self, event_id: str, error: str) -> int:
        """Record a processing error and bump the retry counter."""
        key = f"{EVENT_PREFIX}{event_id}"
        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(key, "processing_error", error)
            pipe.hincrby(key, "retry_count", 1)
            _, retry_count = await pipe.execute()
        return int(retry_count)
