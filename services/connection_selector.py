"""Physical connection pool and the allocation choke point.

Free connections sit in one sorted set per class. Allocation pops the oldest
member of the highest-priority non-empty set inside a Lua script, so two
orders can never be handed the same device. An allocation is remembered per
order, which makes re-running a failed activation pick the same connection.

Layout:
    connection:{id}                  hash
    connections                      set of every known connection id
    connections:free:{class}         zset of unallocated ids, scored by registration time
    connection:by_order:{order_id}   id allocated to the order
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import ApplicationConfig
from models import Connection, ConnectionClass, SelectedConnection, SyncSummary
from utils import Clock, create_contextual_logger, from_iso, to_epoch, to_iso, utc_now
from utils.errors import NoConnectionAvailable
from utils.hashes import decode_bool, encode_fields
from .redis_client import RedisClient

CONNECTION_PREFIX = "connection:"
CONNECTION_INDEX_KEY = "connections"
FREE_PREFIX = "connections:free:"
BY_ORDER_PREFIX = "connection:by_order:"

PRIORITY = [ConnectionClass.ACTIVE, ConnectionClass.INACTIVE, ConnectionClass.UNCONFIGURED]

# KEYS: by_order, free sets in priority order
# ARGV: order_id, connection prefix, now (iso), classes in priority order
_LUA_ALLOCATE = r"""
local existing = redis.call('GET', KEYS[1])
if existing then
  return {existing, redis.call('HGET', ARGV[2] .. existing, 'connection_class') or 'active'}
end
for i = 2, #KEYS do
  local ids = redis.call('ZRANGE', KEYS[i], 0, 0)
  if #ids > 0 then
    local cid = ids[1]
    local cls = ARGV[2 + i]
    redis.call('ZREM', KEYS[i], cid)
    redis.call('HSET', ARGV[2] .. cid, 'allocated_order_id', ARGV[1], 'connection_class', cls, 'updated_at', ARGV[3])
    redis.call('SET', KEYS[1], cid)
    return {cid, cls}
  end
end
return {'', ''}
"""

# KEYS: by_order
# ARGV: connection prefix, free prefix, now (epoch score), now (iso)
_LUA_RELEASE = r"""
local cid = redis.call('GET', KEYS[1])
if not cid then
  return ''
end
local ckey = ARGV[1] .. cid
if redis.call('HGET', ckey, 'is_occupied') == '1' then
  return ''
end
local cls = redis.call('HGET', ckey, 'connection_class') or 'active'
redis.call('HSET', ckey, 'allocated_order_id', '', 'updated_at', ARGV[4])
redis.call('ZADD', ARGV[2] .. cls, ARGV[3], cid)
redis.call('DEL', KEYS[1])
return cid
"""

# KEYS: connection hash
# ARGV: connection id, free prefix, now (epoch score), by_order prefix, now (iso)
_LUA_FREE = r"""
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
local order_id = redis.call('HGET', KEYS[1], 'order_id')
local allocated = redis.call('HGET', KEYS[1], 'allocated_order_id')
for _, oid in ipairs({order_id, allocated}) do
  if oid and oid ~= '' then
    redis.call('DEL', ARGV[4] .. oid)
  end
end
redis.call('HSET', KEYS[1],
  'is_occupied', '0', 'user_id', '', 'order_id', '', 'allocated_order_id', '',
  'proxy_access', '[]', 'proxy_ids', '[]', 'expires_at', '', 'expires_at_ts', '',
  'connection_class', 'active', 'updated_at', ARGV[5])
redis.call('ZREM', ARGV[2] .. 'inactive', ARGV[1])
redis.call('ZREM', ARGV[2] .. 'unconfigured', ARGV[1])
redis.call('ZADD', ARGV[2] .. 'active', ARGV[3], ARGV[1])
return 1
"""

# KEYS: connection hash, connection index
# ARGV: connection id, class, name, now (epoch score), free prefix, now (iso)
_LUA_REGISTER = r"""
local allocated = redis.call('HGET', KEYS[1], 'allocated_order_id')
local occupied = redis.call('HGET', KEYS[1], 'is_occupied')
if (allocated and allocated ~= '') or occupied == '1' then
  if ARGV[3] ~= '' then
    redis.call('HSET', KEYS[1], 'name', ARGV[3])
  end
  return 'busy'
end
local existed = redis.call('EXISTS', KEYS[1])
for _, cls in ipairs({'active', 'inactive', 'unconfigured'}) do
  redis.call('ZREM', ARGV[5] .. cls, ARGV[1])
end
redis.call('HSET', KEYS[1], 'connection_id', ARGV[1], 'connection_class', ARGV[2],
  'is_occupied', '0', 'updated_at', ARGV[6])
if ARGV[3] ~= '' or existed == 0 then
  redis.call('HSET', KEYS[1], 'name', ARGV[3])
end
redis.call('SADD', KEYS[2], ARGV[1])
redis.call('ZADD', ARGV[5] .. ARGV[2], ARGV[4], ARGV[1])
if existed == 1 then
  return 'updated'
end
return 'created'
"""

# KEYS: connection hash
# ARGV: connection id, free prefix, now (epoch score), now (iso)
_LUA_ACTIVATE = r"""
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'connection_class', 'active', 'updated_at', ARGV[4])
if redis.call('ZREM', ARGV[2] .. 'inactive', ARGV[1]) == 1 then
  redis.call('ZADD', ARGV[2] .. 'active', ARGV[3], ARGV[1])
end
return 1
"""


def connection_key(connection_id: str) -> str:
    return f"{CONNECTION_PREFIX}{connection_id}"


def classify_device_connection(app_data: Any, plan_info: Any) -> Optional[ConnectionClass]:
    """Pool class of a device as reported by the device API."""
    if app_data and plan_info:
        return ConnectionClass.ACTIVE
    if plan_info:
        return ConnectionClass.UNCONFIGURED
    if app_data:
        return ConnectionClass.INACTIVE
    return None


def _decode_connection(data: Dict[str, str]) -> Connection:
    return Connection(
        connection_id=data["connection_id"],
        name=data.get("name") or "",
        connection_class=data.get("connection_class") or ConnectionClass.ACTIVE.value,
        is_occupied=decode_bool(data.get("is_occupied")),
        user_id=data.get("user_id") or None,
        order_id=data.get("order_id") or None,
        allocated_order_id=data.get("allocated_order_id") or None,
        proxy_access=json.loads(data["proxy_access"]) if data.get("proxy_access") else [],
        proxy_ids=json.loads(data["proxy_ids"]) if data.get("proxy_ids") else [],
        expires_at=from_iso(data.get("expires_at")),
        updated_at=from_iso(data.get("updated_at")),
    )


class ConnectionSelector:
    """Allocates physical connections to orders by priority."""

    def __init__(self, config: ApplicationConfig, redis_client: RedisClient, clock: Clock = utc_now) -> None:
        self.config = config
        self.redis_client = redis_client
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="connection_selector")

    def _now(self) -> str:
        return str(to_epoch(self.clock()))

    def _stamp(self) -> str:
        return to_iso(self.clock())

    async def get_available_connection(self, order_id: str) -> SelectedConnection:
        """Allocate a connection to ``order_id``.

        Priority is active, then inactive (needs device-side activation), then
        never configured. Raises ``NoConnectionAvailable`` when every free set
        is empty, independently of what the quota counter says.
        """
        keys = [f"{BY_ORDER_PREFIX}{order_id}"] + [f"{FREE_PREFIX}{c.value}" for c in PRIORITY]
        connection_id, connection_class = await self.redis_client.eval_script(
            _LUA_ALLOCATE,
            keys,
            [order_id, CONNECTION_PREFIX, self._stamp()] + [c.value for c in PRIORITY],
        )
        if not connection_id:
            self.logger.error(
                "No physical connection available",
                serviceName="ConnectionSelector",
                operationName="get_available_connection",
                order_id=order_id,
            )
            raise NoConnectionAvailable()

        selected = SelectedConnection.from_class(connection_id, connection_class)
        self.logger.info(
            "Connection allocated",
            serviceName="ConnectionSelector",
            operationName="get_available_connection",
            order_id=order_id,
            connection_id=connection_id,
            connection_class=connection_class,
        )
        return selected

    async def get_allocated_connection_id(self, order_id: str) -> Optional[str]:
        return await self.redis_client.client.get(f"{BY_ORDER_PREFIX}{order_id}")

    async def release_connection(self, order_id: str) -> Optional[str]:
        """Return an allocated, unoccupied connection to its free set."""
        connection_id = await self.redis_client.eval_script(
            _LUA_RELEASE,
            [f"{BY_ORDER_PREFIX}{order_id}"],
            [CONNECTION_PREFIX, FREE_PREFIX, self._now(), self._stamp()],
        )
        if connection_id:
            self.logger.info("Connection returned to pool", order_id=order_id, connection_id=connection_id)
            return connection_id
        return None

    async def free_connection(self, connection_id: str) -> bool:
        """Clear occupancy after the owning order ended. The connection rejoins the active set."""
        freed = await self.redis_client.eval_script(
            _LUA_FREE,
            [connection_key(connection_id)],
            [connection_id, FREE_PREFIX, self._now(), BY_ORDER_PREFIX, self._stamp()],
        )
        if int(freed):
            self.logger.info("Connection freed", connection_id=connection_id)
        return bool(int(freed))

    async def activate_connection(self, connection_id: str) -> bool:
        """Reclassify a connection as active after it was activated on the device."""
        updated = await self.redis_client.eval_script(
            _LUA_ACTIVATE,
            [connection_key(connection_id)],
            [connection_id, FREE_PREFIX, self._now(), self._stamp()],
        )
        if int(updated):
            self.logger.info("Connection marked active", connection_id=connection_id)
        return bool(int(updated))

    async def register_connection(
        self,
        connection_id: str,
        connection_class: ConnectionClass = ConnectionClass.ACTIVE,
        name: str = "",
    ) -> str:
        """Add or reclassify a connection. Allocated or occupied ones keep their state."""
        cls = ConnectionClass(connection_class)
        return await self.redis_client.eval_script(
            _LUA_REGISTER,
            [connection_key(connection_id), CONNECTION_INDEX_KEY],
            [connection_id, cls.value, name, self._now(), FREE_PREFIX, self._stamp()],
        )

    async def sync_from_device_api(self, device_client: Any) -> SyncSummary:
        """Import the device fleet and classify every connection into the pool."""
        summary = SyncSummary()
        for device in await device_client.list_connections():
            summary.total += 1
            cls = classify_device_connection(device.app_data, device.plan_info)
            if cls is None:
                summary.skipped += 1
                continue
            await self.register_connection(device.id, cls, device.name)
            setattr(summary, cls.value, getattr(summary, cls.value) + 1)

        self.logger.info(
            "Connection pool synced from device API",
            serviceName="ConnectionSelector",
            operationName="sync_from_device_api",
            **summary.model_dump(),
        )
        return summary

    def queue_occupy(
        self,
        pipe: Any,
        connection_id: str,
        user_id: str,
        order_id: str,
        proxy_access: List[str],
        proxy_ids: List[str],
        expires_at: datetime,
    ) -> None:
        """Queue the writes marking a connection occupied on a MULTI pipeline."""
        pipe.hset(
            connection_key(connection_id),
            mapping=encode_fields(
                {
                    "is_occupied": True,
                    "user_id": user_id,
                    "order_id": order_id,
                    "allocated_order_id": order_id,
                    "proxy_access": proxy_access,
                    "proxy_ids": proxy_ids,
                    "expires_at": expires_at,
                    "updated_at": self.clock(),
                }
            ),
        )
        pipe.set(f"{BY_ORDER_PREFIX}{order_id}", connection_id)

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        data = await self.redis_client.client.hgetall(connection_key(connection_id))
        return _decode_connection(data) if data else None

    async def list_connections(self) -> List[Connection]:
        connections = []
        for connection_id in sorted(await self.redis_client.client.smembers(CONNECTION_INDEX_KEY)):
            connection = await self.get_connection(connection_id)
            if connection is not None:
                connections.append(connection)
        return connections

    async def pool_counts(self) -> Dict[str, int]:
        client = self.redis_client.client
        counts = {f"free_{c.value}": int(await client.zcard(f"{FREE_PREFIX}{c.value}")) for c in PRIORITY}
        counts["total"] = int(await client.scard(CONNECTION_INDEX_KEY))
        return counts

