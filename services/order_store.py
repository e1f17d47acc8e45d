"""Order persistence with atomic, status-gated transitions.

Orders are Redis hashes. Every status change goes through ``transition``,
a compare-and-set on the current status, so a late or duplicate event can
never move an order out of a state it no longer expects.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, TypeAdapter

from config import ApplicationConfig
from models import Order, OrderMetadata, OrderStatus
from utils import Clock, create_contextual_logger, from_iso, to_epoch, utc_now
from utils.errors import InvalidOrderState, OrderNotFound
from utils.hashes import decode_bool, encode_fields
from .redis_client import RedisClient

ORDER_PREFIX = "order:"
USER_INDEX_PREFIX = "orders:user:"
ACTIVE_EXPIRY_KEY = "orders:active:expiry"
REFERENCE_PREFIX = "order:ref:"
TRIAL_MARKER_PREFIX = "trial:"

_metadata_adapter: TypeAdapter = TypeAdapter(OrderMetadata)

# KEYS: order hash, active-expiry zset
# ARGV: allowed statuses (csv), new status, n_set, n_setnx, guard_field, guard_value,
#       then n_set field/value pairs and n_setnx field/value pairs
_LUA_TRANSITION = r"""
local current = redis.call('HGET', KEYS[1], 'status')
if not current then
  return {'not_found', ''}
end
local allowed = false
for s in string.gmatch(ARGV[1], '[^,]+') do
  if s == current then allowed = true end
end
if not allowed then
  return {'mismatch', current}
end
if ARGV[5] ~= '' and redis.call('HGET', KEYS[1], ARGV[5]) ~= ARGV[6] then
  return {'mismatch', current}
end

local idx = 7
for i = 1, tonumber(ARGV[3]) do
  redis.call('HSET', KEYS[1], ARGV[idx], ARGV[idx + 1])
  idx = idx + 2
end
for i = 1, tonumber(ARGV[4]) do
  local v = redis.call('HGET', KEYS[1], ARGV[idx])
  if (not v) or v == '' then
    redis.call('HSET', KEYS[1], ARGV[idx], ARGV[idx + 1])
  end
  idx = idx + 2
end
redis.call('HSET', KEYS[1], 'status', ARGV[2])

local order_id = redis.call('HGET', KEYS[1], 'id')
local ts = redis.call('HGET', KEYS[1], 'expires_at_ts')
if ARGV[2] == 'active' and ts and ts ~= '' then
  redis.call('ZADD', KEYS[2], ts, order_id)
else
  redis.call('ZREM', KEYS[2], order_id)
end
return {'ok', current}
"""


def order_key(order_id: str) -> str:
    return f"{ORDER_PREFIX}{order_id}"


def _decode_order(data: Dict[str, str]) -> Order:
    return Order(
        id=data["id"],
        user_id=data["user_id"],
        plan_id=data["plan_id"],
        status=data["status"],
        quantity=int(data.get("quantity") or 1),
        total_amount=Decimal(data.get("total_amount") or "0"),
        currency=data.get("currency") or "usd",
        reference=data.get("reference") or None,
        duration_days=int(data.get("duration_days") or 30),
        auto_renew=decode_bool(data.get("auto_renew")),
        start_at=from_iso(data.get("start_at")),
        expires_at=from_iso(data.get("expires_at")),
        created_at=from_iso(data["created_at"]),
        updated_at=from_iso(data.get("updated_at") or data["created_at"]),
        metadata=_metadata_adapter.validate_json(data["metadata"]) if data.get("metadata") else {"kind": "pending_payment"},
    )


StatusSpec = Union[OrderStatus, str, Iterable[Union[OrderStatus, str]]]


def _status_csv(expected: StatusSpec) -> str:
    if isinstance(expected, (OrderStatus, str)):
        expected = [expected]
    return ",".join(s.value if isinstance(s, OrderStatus) else s for s in expected)


class OrderStore:
    """Redis-backed order repository."""

    def __init__(self, config: ApplicationConfig, redis_client: RedisClient, clock: Clock = utc_now) -> None:
        self.config = config
        self.redis_client = redis_client
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="order_store")

    async def create(self, order: Order) -> Order:
        fields = encode_fields(order.model_dump(exclude={"metadata"}))
        fields["metadata"] = order.metadata.model_dump_json()
        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(order_key(order.id), mapping=fields)
            pipe.sadd(f"{USER_INDEX_PREFIX}{order.user_id}", order.id)
            if order.reference:
                pipe.set(f"{REFERENCE_PREFIX}{order.reference}", order.id)
            if order.status == OrderStatus.ACTIVE and order.expires_at is not None:
                pipe.zadd(ACTIVE_EXPIRY_KEY, {order.id: to_epoch(order.expires_at)})
            await pipe.execute()
        self.logger.info(
            "Order created",
            order_id=order.id,
            user_id=order.user_id,
            status=order.status,
            quantity=order.quantity,
        )
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        data = await self.redis_client.client.hgetall(order_key(order_id))
        if not data:
            return None
        return _decode_order(data)

    async def require(self, order_id: str) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def delete(self, order_id: str) -> None:
        """Remove an order created by a checkout that could not complete."""
        order = await self.get(order_id)
        if order is None:
            return
        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(order_key(order_id))
            pipe.srem(f"{USER_INDEX_PREFIX}{order.user_id}", order_id)
            pipe.zrem(ACTIVE_EXPIRY_KEY, order_id)
            if order.reference:
                pipe.delete(f"{REFERENCE_PREFIX}{order.reference}")
            await pipe.execute()
        self.logger.info("Order deleted", order_id=order_id)

    async def find_by_reference(self, reference: str) -> Optional[Order]:
        order_id = await self.redis_client.client.get(f"{REFERENCE_PREFIX}{reference}")
        return await self.get(order_id) if order_id else None

    async def list_for_user(self, user_id: str) -> List[Order]:
        order_ids = await self.redis_client.client.smembers(f"{USER_INDEX_PREFIX}{user_id}")
        orders = []
        for order_id in sorted(order_ids):
            order = await self.get(order_id)
            if order is not None:
                orders.append(order)
        return sorted(orders, key=lambda o: o.created_at)

    async def transition(
        self,
        order_id: str,
        expected: StatusSpec,
        new_status: OrderStatus,
        set_fields: Optional[Dict[str, Any]] = None,
        set_if_missing: Optional[Dict[str, Any]] = None,
        guard: Optional[Tuple[str, str]] = None,
    ) -> str:
        """Atomically move ``order_id`` to ``new_status`` if its status is expected.

        ``set_fields`` are always written, ``set_if_missing`` only where empty.
        ``guard`` adds an equality check on another field.
        Returns the previous status, raises ``InvalidOrderState`` on mismatch.
        """
        always = encode_fields({**(set_fields or {}), "updated_at": self.clock()})
        missing = encode_fields(set_if_missing or {})
        guard_field, guard_value = guard if guard else ("", "")

        args: List[str] = [
            _status_csv(expected),
            new_status.value,
            str(len(always)),
            str(len(missing)),
            guard_field,
            guard_value,
        ]
        for key, value in list(always.items()) + list(missing.items()):
            args.extend([key, value])

        outcome, previous = await self.redis_client.eval_script(
            _LUA_TRANSITION, [order_key(order_id), ACTIVE_EXPIRY_KEY], args
        )
        if outcome == "not_found":
            raise OrderNotFound(order_id)
        if outcome == "mismatch":
            raise InvalidOrderState(
                f"Order {order_id} is {previous}, expected {args[0]}",
                order_id=order_id,
                current_status=previous,
                expected=args[0],
            )

        self.logger.info(
            "Order status changed",
            serviceName="OrderStore",
            operationName="transition",
            order_id=order_id,
            from_status=previous,
            to_status=new_status.value,
        )
        return previous

    def queue_activation(self, pipe: Any, order_id: str, expires_at: datetime, fields: Dict[str, Any]) -> None:
        """Queue the move to ``active`` on a MULTI pipeline the caller is watching."""
        pipe.hset(
            order_key(order_id),
            mapping=encode_fields(
                {**fields, "status": OrderStatus.ACTIVE, "expires_at": expires_at, "updated_at": self.clock()}
            ),
        )
        pipe.zadd(ACTIVE_EXPIRY_KEY, {order_id: to_epoch(expires_at)})

    async def update_metadata(self, order_id: str, metadata: BaseModel) -> None:
        await self.redis_client.client.hset(
            order_key(order_id),
            mapping=encode_fields({"metadata": metadata, "updated_at": self.clock()}),
        )

    async def claim_trial(self, user_id: str) -> bool:
        """Take the user's one free trial. False when it was already taken."""
        return bool(await self.redis_client.client.set(f"{TRIAL_MARKER_PREFIX}{user_id}", "1", nx=True))

    async def release_trial_claim(self, user_id: str) -> None:
        await self.redis_client.client.delete(f"{TRIAL_MARKER_PREFIX}{user_id}")

    async def set_auto_renew(self, order_id: str, enabled: bool) -> None:
        await self.redis_client.client.hset(
            order_key(order_id),
            mapping=encode_fields({"auto_renew": enabled, "updated_at": self.clock()}),
        )

    async def get_field(self, order_id: str, field: str) -> Optional[str]:
        value = await self.redis_client.client.hget(order_key(order_id), field)
        return value or None

    async def cancel_trial_orders(self, user_id: str, exclude_order_id: Optional[str] = None) -> List[Order]:
        """Retire the user's active zero-cost orders. Returns the cancelled ones."""
        now = self.clock()
        cancelled: List[Order] = []
        for order in await self.list_for_user(user_id):
            if order.id == exclude_order_id or not order.is_trial:
                continue
            if order.status != OrderStatus.ACTIVE:
                continue
            try:
                await self.transition(
                    order.id,
                    OrderStatus.ACTIVE,
                    OrderStatus.CANCELLED,
                    set_fields={"expires_at": now},
                )
            except InvalidOrderState:
                continue
            cancelled.append(order)

        if cancelled:
            self.logger.info(
                "Trial orders cancelled for paid activation",
                user_id=user_id,
                cancelled_orders=[o.id for o in cancelled],
            )
        return cancelled

    async def due_for_expiry(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        moment = to_epoch(now or self.clock())
        return list(
            await self.redis_client.client.zrangebyscore(
                ACTIVE_EXPIRY_KEY, "-inf", moment, start=0, num=limit
            )
        )
