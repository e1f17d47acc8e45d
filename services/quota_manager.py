"""Quota manager for the proxy fulfillment service.

The available-connections counter and its reservation ledger live in Redis.
Every operation that reads and then mutates them runs as a single Lua script,
so concurrent callers racing for the last units are serialized by the server.

Layout:
    quota:available                 integer counter, never negative
    quota:reservation:{order_id}    hash, one hold per order
    quota:reservations:pending      zset of order ids scored by expires_at

Expired pending holds are released lazily by every script (bounded sweep)
and eagerly by the background sweeper.
"""

import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from config import ApplicationConfig
from models import (
    AvailabilityResult,
    DeductResult,
    QuotaReservation,
    QuotaStatus,
    ReservationResult,
    ReservationState,
    ReservationStatus,
)
from utils import Clock, create_contextual_logger, from_epoch, to_epoch, utc_now
from utils.errors import (
    AlreadyFinal,
    FulfillmentError,
    InsufficientQuota,
    ReservationConflict,
    ReservationNotFound,
)
from utils.metrics import quota_available, quota_reservations
from .redis_client import RedisClient

AVAILABLE_KEY = "quota:available"
PENDING_KEY = "quota:reservations:pending"
RESERVATION_PREFIX = "quota:reservation:"

# Shared helpers prepended to every script.
_LUA_HELPERS = r"""
local function release_hold(avail_key, pending_key, rkey, order_id, now_s, reason)
  local held = tonumber(redis.call('HGET', rkey, 'connections_held') or '0')
  redis.call('INCRBY', avail_key, held)
  redis.call('HSET', rkey, 'state', 'released', 'released_at', now_s, 'release_reason', reason)
  redis.call('ZREM', pending_key, order_id)
end

local function sweep(avail_key, pending_key, prefix, now, now_s, limit)
  local expired = redis.call('ZRANGEBYSCORE', pending_key, '-inf', now, 'LIMIT', 0, limit)
  local swept = 0
  for i = 1, #expired do
    local order_id = expired[i]
    local rkey = prefix .. order_id
    if redis.call('HGET', rkey, 'state') == 'pending' then
      release_hold(avail_key, pending_key, rkey, order_id, now_s, 'expired')
      swept = swept + 1
    else
      redis.call('ZREM', pending_key, order_id)
    end
  end
  return swept
end
"""

# KEYS: available, pending
# ARGV: prefix, now, sweep_limit
_LUA_CHECK = _LUA_HELPERS + r"""
sweep(KEYS[1], KEYS[2], ARGV[1], tonumber(ARGV[2]), ARGV[2], tonumber(ARGV[3]))
return redis.call('GET', KEYS[1]) or '0'
"""

# KEYS: available, pending, reservation
# ARGV: prefix, now, sweep_limit, order_id, user_id, n, expires_at, reservation_id
_LUA_RESERVE = _LUA_HELPERS + r"""
local now = tonumber(ARGV[2])
sweep(KEYS[1], KEYS[2], ARGV[1], now, ARGV[2], tonumber(ARGV[3]))

local state = redis.call('HGET', KEYS[3], 'state')
if state == 'pending' then
  if tonumber(redis.call('HGET', KEYS[3], 'expires_at')) <= now then
    release_hold(KEYS[1], KEYS[2], KEYS[3], ARGV[4], ARGV[2], 'expired')
    state = 'released'
  else
    local cur = redis.call('GET', KEYS[1]) or '0'
    return {'existing', redis.call('HGET', KEYS[3], 'reservation_id'),
            redis.call('HGET', KEYS[3], 'expires_at'),
            redis.call('HGET', KEYS[3], 'connections_held'), cur}
  end
end
if state == 'confirmed' then
  return {'confirmed', '', '', '', redis.call('GET', KEYS[1]) or '0'}
end

local n = tonumber(ARGV[6])
local available = tonumber(redis.call('GET', KEYS[1]) or '0')
if available < n then
  return {'insufficient', '', '', '', tostring(available)}
end

local remaining = redis.call('DECRBY', KEYS[1], n)
redis.call('DEL', KEYS[3])
redis.call('HSET', KEYS[3],
  'reservation_id', ARGV[8], 'order_id', ARGV[4], 'user_id', ARGV[5],
  'connections_held', ARGV[6], 'state', 'pending',
  'created_at', ARGV[2], 'expires_at', ARGV[7])
redis.call('ZADD', KEYS[2], ARGV[7], ARGV[4])
return {'reserved', ARGV[8], ARGV[7], ARGV[6], tostring(remaining)}
"""

# KEYS: available, pending, reservation
# ARGV: prefix, now, sweep_limit, order_id
_LUA_CONFIRM = _LUA_HELPERS + r"""
local now = tonumber(ARGV[2])
sweep(KEYS[1], KEYS[2], ARGV[1], now, ARGV[2], tonumber(ARGV[3]))

local state = redis.call('HGET', KEYS[3], 'state')
if not state then
  return {'not_found', ''}
end
if state ~= 'pending' then
  return {'final', state}
end
if tonumber(redis.call('HGET', KEYS[3], 'expires_at')) <= now then
  release_hold(KEYS[1], KEYS[2], KEYS[3], ARGV[4], ARGV[2], 'expired')
  return {'final', 'released'}
end
redis.call('HSET', KEYS[3], 'state', 'confirmed', 'confirmed_at', ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[4])
return {'confirmed', 'pending'}
"""

# KEYS: available, pending, reservation
# ARGV: prefix, now, sweep_limit, order_id, reason
_LUA_RELEASE = _LUA_HELPERS + r"""
sweep(KEYS[1], KEYS[2], ARGV[1], tonumber(ARGV[2]), ARGV[2], tonumber(ARGV[3]))

local state = redis.call('HGET', KEYS[3], 'state')
if not state then
  return 'not_found'
end
if state == 'pending' then
  release_hold(KEYS[1], KEYS[2], KEYS[3], ARGV[4], ARGV[2], ARGV[5])
  return 'released'
end
if state == 'released' then
  return 'noop'
end
return state
"""

# KEYS: available, pending
# ARGV: prefix, now, sweep_limit
_LUA_SWEEP = _LUA_HELPERS + r"""
return sweep(KEYS[1], KEYS[2], ARGV[1], tonumber(ARGV[2]), ARGV[2], tonumber(ARGV[3]))
"""

# KEYS: available, reservation
# ARGV: now
_LUA_RETURN_CAPACITY = r"""
if redis.call('HGET', KEYS[2], 'state') ~= 'confirmed' then
  return 'noop'
end
if redis.call('HEXISTS', KEYS[2], 'returned_at') == 1 then
  return 'noop'
end
local held = tonumber(redis.call('HGET', KEYS[2], 'connections_held') or '0')
redis.call('INCRBY', KEYS[1], held)
redis.call('HSET', KEYS[2], 'returned_at', ARGV[1])
return 'returned'
"""


def reservation_key(order_id: str) -> str:
    return f"{RESERVATION_PREFIX}{order_id}"


class QuotaManager:
    """Atomic check/reserve/confirm/release/deduct over the quota store."""

    def __init__(
        self,
        config: ApplicationConfig,
        redis_client: RedisClient,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.redis_client = redis_client
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="quota_manager")

    def _now(self) -> int:
        return to_epoch(self.clock())

    def _sweep_args(self, now: int) -> List[str]:
        return [RESERVATION_PREFIX, str(now), str(self.config.reservation_sweep_batch_size)]

    async def check_availability(self, n: int = 1) -> AvailabilityResult:
        """Verify that ``n`` connections are available without reserving them."""
        raw = await self.redis_client.eval_script(
            _LUA_CHECK, [AVAILABLE_KEY, PENDING_KEY], self._sweep_args(self._now())
        )
        available = int(raw)
        quota_available.set(available)

        if available < n:
            raise InsufficientQuota(available=available, requested=n)
        return AvailabilityResult(ok=True, available=available)

    async def reserve_quota(
        self,
        order_id: str,
        user_id: str,
        n: int,
        ttl_minutes: Optional[int] = None,
    ) -> ReservationResult:
        """Hold ``n`` connections for ``order_id`` until the TTL elapses.

        Re-reserving an order whose hold is still live returns that hold
        unchanged. An order whose hold is already confirmed is a conflict.
        """
        if n <= 0:
            raise ValueError("Reservation size must be positive")

        ttl = ttl_minutes if ttl_minutes is not None else self.config.reservation_ttl_minutes
        now = self._now()
        expires_at = now + ttl * 60
        reservation_id = str(uuid.uuid4())

        status, rid, raw_expires, raw_held, raw_available = await self.redis_client.eval_script(
            _LUA_RESERVE,
            [AVAILABLE_KEY, PENDING_KEY, reservation_key(order_id)],
            self._sweep_args(now) + [order_id, user_id, n, expires_at, reservation_id],
        )
        available = int(raw_available)
        quota_available.set(available)
        quota_reservations.labels(operation="reserve", outcome=status).inc()

        if status == "insufficient":
            self.logger.info(
                "Quota reservation refused",
                serviceName="QuotaManager",
                operationName="reserve_quota",
                order_id=order_id,
                requested=n,
                available=available,
            )
            raise InsufficientQuota(available=available, requested=n)

        if status == "confirmed":
            raise ReservationConflict(
                f"Order {order_id} already holds a confirmed reservation",
                order_id=order_id,
            )

        expires = int(raw_expires)
        result = ReservationResult(
            reservation_id=rid,
            order_id=order_id,
            expires_at=from_epoch(expires),
            expires_in_seconds=max(0, expires - now),
            reserved_connections=int(raw_held),
            remaining_quota=available,
            existing=status == "existing",
        )
        self.logger.info(
            "Quota reserved" if status == "reserved" else "Existing quota reservation returned",
            serviceName="QuotaManager",
            operationName="reserve_quota",
            order_id=order_id,
            user_id=user_id,
            reservation_id=rid,
            reserved_connections=result.reserved_connections,
            remaining_quota=available,
            expires_at=result.expires_at.isoformat(),
        )
        return result

    async def confirm_reservation(self, order_id: str) -> QuotaReservation:
        """Make a pending hold permanent. The counter does not change."""
        status, detail = await self.redis_client.eval_script(
            _LUA_CONFIRM,
            [AVAILABLE_KEY, PENDING_KEY, reservation_key(order_id)],
            self._sweep_args(self._now()) + [order_id],
        )
        quota_reservations.labels(operation="confirm", outcome=status).inc()

        if status == "not_found":
            raise ReservationNotFound(order_id)
        if status == "final":
            raise AlreadyFinal(order_id, detail)

        self.logger.info(
            "Quota reservation confirmed",
            serviceName="QuotaManager",
            operationName="confirm_reservation",
            order_id=order_id,
        )
        reservation = await self.get_reservation(order_id)
        if reservation is None:
            # the row was removed between the confirm and the read
            raise ReservationNotFound(order_id)
        return reservation

    async def release_reservation(self, order_id: str, reason: str = "released") -> bool:
        """Release a pending hold and credit it back.

        Returns False when the hold was already released, which keeps
        rollback paths retry-safe.
        """
        status = await self.redis_client.eval_script(
            _LUA_RELEASE,
            [AVAILABLE_KEY, PENDING_KEY, reservation_key(order_id)],
            self._sweep_args(self._now()) + [order_id, reason],
        )
        quota_reservations.labels(operation="release", outcome=status).inc()

        if status == "not_found":
            raise ReservationNotFound(order_id)
        if status == "noop":
            self.logger.debug("Reservation already released", order_id=order_id)
            return False
        if status != "released":
            raise AlreadyFinal(order_id, status)

        self.logger.info(
            "Quota reservation released",
            serviceName="QuotaManager",
            operationName="release_reservation",
            order_id=order_id,
            reason=reason,
        )
        return True

    async def deduct_quota(self, order_id: str, user_id: str, n: int) -> DeductResult:
        """Reserve with a short TTL and confirm immediately.

        A failed confirm releases the hold before the error propagates, so no
        pending reservation is left behind.
        """
        reservation = await self.reserve_quota(
            order_id, user_id, n, ttl_minutes=self.config.deduct_ttl_minutes
        )
        try:
            await self.confirm_reservation(order_id)
        except FulfillmentError as e:
            self.logger.warning(
                "Confirm failed during quota deduction, releasing hold",
                order_id=order_id,
                error=str(e),
            )
            try:
                await self.release_reservation(order_id, reason="deduct_rollback")
            except FulfillmentError as release_error:
                self.logger.error(
                    "Failed to release hold after deduction failure",
                    order_id=order_id,
                    error=str(release_error),
                )
            raise

        return DeductResult(
            order_id=order_id,
            deducted_connections=reservation.reserved_connections,
            remaining_quota=reservation.remaining_quota,
        )

    async def release_expired_reservations(self, limit: Optional[int] = None) -> int:
        """Release pending holds past their expiry. Returns how many were released."""
        now = self._now()
        batch = limit or self.config.reservation_sweep_batch_size
        swept = int(
            await self.redis_client.eval_script(
                _LUA_SWEEP,
                [AVAILABLE_KEY, PENDING_KEY],
                [RESERVATION_PREFIX, str(now), str(batch)],
            )
        )
        if swept:
            quota_reservations.labels(operation="expire", outcome="released").inc(swept)
            self.logger.info("Released expired quota reservations", released=swept)
        return swept

    async def return_capacity(self, order_id: str) -> bool:
        """Credit a confirmed hold back once its order has ended."""
        status = await self.redis_client.eval_script(
            _LUA_RETURN_CAPACITY,
            [AVAILABLE_KEY, reservation_key(order_id)],
            [str(self._now())],
        )
        if status == "returned":
            self.logger.info("Quota returned for ended order", order_id=order_id)
            return True
        return False

    async def set_available(self, available: int) -> None:
        if available < 0:
            raise ValueError("Available quota cannot be negative")
        await self.redis_client.client.set(AVAILABLE_KEY, available)
        quota_available.set(available)
        self.logger.info("Available quota set", available=available)

    async def get_available(self) -> int:
        return int(await self.redis_client.client.get(AVAILABLE_KEY) or 0)

    async def get_quota_status(self) -> QuotaStatus:
        client = self.redis_client.client
        order_ids = await client.zrange(PENDING_KEY, 0, -1)
        reserved = 0
        for order_id in order_ids:
            reserved += int(await client.hget(reservation_key(order_id), "connections_held") or 0)
        return QuotaStatus(
            available=await self.get_available(),
            pending_reservations=len(order_ids),
            reserved_connections=reserved,
        )

    async def get_reservation(self, order_id: str) -> Optional[QuotaReservation]:
        data: Dict[str, str] = await self.redis_client.client.hgetall(reservation_key(order_id))
        if not data:
            return None
        return QuotaReservation(
            reservation_id=data["reservation_id"],
            order_id=data["order_id"],
            user_id=data["user_id"],
            connections_held=int(data["connections_held"]),
            state=data["state"],
            created_at=from_epoch(data["created_at"]),
            expires_at=from_epoch(data["expires_at"]),
            confirmed_at=from_epoch(data["confirmed_at"]) if data.get("confirmed_at") else None,
            released_at=from_epoch(data["released_at"]) if data.get("released_at") else None,
            release_reason=data.get("release_reason"),
            returned_at=from_epoch(data["returned_at"]) if data.get("returned_at") else None,
        )

    async def get_reservation_status(self, order_id: str) -> ReservationStatus:
        reservation = await self.get_reservation(order_id)
        if reservation is None:
            return ReservationStatus(order_id=order_id, has_reservation=False)

        now = self.clock()
        remaining = int((reservation.expires_at - now) / timedelta(seconds=1))
        is_pending = reservation.state == ReservationState.PENDING.value
        return ReservationStatus(
            order_id=order_id,
            has_reservation=True,
            state=reservation.state,
            reserved_connections=reservation.connections_held,
            expires_at=reservation.expires_at,
            expires_in_seconds=max(0, remaining) if is_pending else 0,
            is_expired=is_pending and remaining <= 0,
        )
