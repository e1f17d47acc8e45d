"""Provisioned proxy credentials and on-demand IP rotation."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from models import ProxyRecord, ProxyStatus, RotationConfig, RotationMode
from utils import Clock, create_contextual_logger, from_iso, utc_now
from utils.errors import InvalidRotationSettings, ProviderError, ProxyNotFound, RotationUnavailable
from utils.hashes import encode_fields
from .redis_client import RedisClient

PROXY_PREFIX = "proxy:"
ORDER_PROXIES_PREFIX = "proxies:order:"


def proxy_key(proxy_id: str) -> str:
    return f"{PROXY_PREFIX}{proxy_id}"


def _decode_proxy(data: Dict[str, str]) -> ProxyRecord:
    return ProxyRecord(
        id=data["id"],
        order_id=data["order_id"],
        user_id=data["user_id"],
        connection_id=data["connection_id"],
        grant_id=data["grant_id"],
        protocol=data["protocol"],
        host=data["host"],
        port=int(data["port"]),
        username=data["username"],
        encrypted_password=data["encrypted_password"],
        status=data.get("status") or ProxyStatus.ACTIVE.value,
        country=data.get("country") or None,
        change_url=data.get("change_url") or None,
        action_link_id=data.get("action_link_id") or None,
        rotation_mode=data.get("rotation_mode") or "none",
        rotation_interval_min=int(data["rotation_interval_min"]) if data.get("rotation_interval_min") else None,
        last_ip=data.get("last_ip") or None,
        expires_at=from_iso(data.get("expires_at")),
        created_at=from_iso(data["created_at"]),
    )


class ProxyStore:
    def __init__(
        self,
        redis_client: RedisClient,
        device_client: Any = None,
        order_store: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        self.redis_client = redis_client
        self.device_client = device_client
        self.order_store = order_store
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="proxy_store")

    def queue_records(self, pipe: Any, records: List[ProxyRecord]) -> None:
        """Queue proxy rows on a MULTI pipeline shared with the order activation."""
        for record in records:
            pipe.hset(proxy_key(record.id), mapping=encode_fields(record.model_dump()))
            pipe.sadd(f"{ORDER_PROXIES_PREFIX}{record.order_id}", record.id)

    async def get(self, proxy_id: str) -> Optional[ProxyRecord]:
        data = await self.redis_client.client.hgetall(proxy_key(proxy_id))
        return _decode_proxy(data) if data else None

    async def require(self, proxy_id: str) -> ProxyRecord:
        record = await self.get(proxy_id)
        if record is None:
            raise ProxyNotFound(proxy_id)
        return record

    async def list_for_order(self, order_id: str) -> List[ProxyRecord]:
        records = []
        for proxy_id in sorted(await self.redis_client.client.smembers(f"{ORDER_PROXIES_PREFIX}{order_id}")):
            record = await self.get(proxy_id)
            if record is not None:
                records.append(record)
        return records

    async def set_status(self, proxy_id: str, status: ProxyStatus, **fields: Any) -> None:
        await self.redis_client.client.hset(
            proxy_key(proxy_id), mapping=encode_fields({"status": status, **fields})
        )

    async def deactivate_for_order(self, order_id: str) -> List[ProxyRecord]:
        """Mark every proxy of the order inactive. Returns the ones that were not already."""
        deactivated = []
        for record in await self.list_for_order(order_id):
            if record.status == ProxyStatus.INACTIVE.value:
                continue
            await self.set_status(record.id, ProxyStatus.INACTIVE)
            deactivated.append(record)
        if deactivated:
            self.logger.info(
                "Proxies deactivated",
                order_id=order_id,
                proxy_ids=[r.id for r in deactivated],
            )
        return deactivated

    async def extend_for_order(self, order_id: str, expires_at: datetime) -> None:
        for record in await self.list_for_order(order_id):
            if record.status != ProxyStatus.INACTIVE.value:
                await self.redis_client.client.hset(
                    proxy_key(record.id), mapping=encode_fields({"expires_at": expires_at})
                )

    async def rotate_ip(self, proxy_id: str, user_id: Optional[str] = None) -> ProxyRecord:
        """Request a new exit IP through the proxy's change link.

        Every proxy of the same connection shares the link, so the new IP is
        recorded on all of the order's rows.
        """
        record = await self.get(proxy_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise ProxyNotFound(proxy_id)
        if record.status != ProxyStatus.ACTIVE.value:
            raise RotationUnavailable(f"Proxy {proxy_id} is {record.status}", proxy_id=proxy_id)
        if not record.change_url or self.device_client is None:
            raise RotationUnavailable(f"Proxy {proxy_id} has no IP change link", proxy_id=proxy_id)

        await self.set_status(proxy_id, ProxyStatus.ROTATING)
        try:
            response = await self.device_client.trigger_ip_change(record.change_url)
        except ProviderError:
            await self.set_status(proxy_id, ProxyStatus.ACTIVE)
            raise

        new_ip = response.get("new_ip") or response.get("ip") if isinstance(response, dict) else None
        for sibling in await self.list_for_order(record.order_id):
            if sibling.connection_id != record.connection_id:
                continue
            fields: Dict[str, Any] = {}
            if new_ip:
                fields["last_ip"] = new_ip
            await self.set_status(sibling.id, ProxyStatus.ACTIVE, **fields)

        self.logger.info(
            "Proxy IP rotated",
            serviceName="ProxyStore",
            operationName="rotate_ip",
            proxy_id=proxy_id,
            order_id=record.order_id,
            new_ip=new_ip,
        )
        return await self.require(proxy_id)

    async def update_rotation_settings(
        self,
        proxy_id: str,
        mode: RotationMode,
        interval_min: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> ProxyRecord:
        """Change the automatic IP rotation of the connection behind a proxy.

        The device applies rotation per connection, so every proxy of the order
        on that connection takes the new settings, and so does the order's
        rotation config. Only ``scheduled`` keeps an interval.
        """
        mode = RotationMode(mode)
        record = await self.get(proxy_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise ProxyNotFound(proxy_id)
        if mode == RotationMode.SCHEDULED and not interval_min:
            raise InvalidRotationSettings(
                "rotation_interval_min is required for scheduled rotation", proxy_id=proxy_id
            )
        if interval_min is not None and interval_min < 1:
            raise InvalidRotationSettings("rotation_interval_min must be positive", proxy_id=proxy_id)
        if record.status == ProxyStatus.INACTIVE.value or self.device_client is None:
            raise RotationUnavailable(f"Proxy {proxy_id} cannot change rotation settings", proxy_id=proxy_id)

        scheduled = mode == RotationMode.SCHEDULED
        interval = interval_min if scheduled else None
        await self.device_client.update_connection_settings(record.connection_id, scheduled, interval or 0)

        fields = encode_fields({"rotation_mode": mode, "rotation_interval_min": interval})
        for sibling in await self.list_for_order(record.order_id):
            if sibling.connection_id == record.connection_id:
                await self.redis_client.client.hset(proxy_key(sibling.id), mapping=fields)

        if self.order_store is not None:
            order = await self.order_store.get(record.order_id)
            if order is not None:
                rotation = RotationConfig(ip_change_enabled=scheduled, interval_minutes=interval or 0)
                await self.order_store.update_metadata(
                    order.id, order.metadata.model_copy(update={"rotation": rotation})
                )

        self.logger.info(
            "Proxy rotation settings updated",
            serviceName="ProxyStore",
            operationName="update_rotation_settings",
            proxy_id=proxy_id,
            connection_id=record.connection_id,
            rotation_mode=mode.value,
            rotation_interval_min=interval,
        )
        return await self.require(proxy_id)
