"""Customer wallet balances kept in integer cents."""

import json
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from utils import Clock, create_contextual_logger, to_iso, utc_now
from utils.errors import InsufficientFunds
from .redis_client import RedisClient

BALANCE_PREFIX = "wallet:balance:"
TRANSACTIONS_PREFIX = "wallet:transactions:"

# KEYS: balance
# ARGV: amount_cents
_LUA_DEBIT = r"""
local balance = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
if balance < amount then
  return {0, tostring(balance)}
end
return {1, tostring(redis.call('DECRBY', KEYS[1], amount))}
"""


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class WalletLedger:
    """Atomic debit and credit of wallet balances."""

    def __init__(self, redis_client: RedisClient, clock: Clock = utc_now) -> None:
        self.redis_client = redis_client
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="wallet")

    async def get_balance_cents(self, user_id: str) -> int:
        return int(await self.redis_client.client.get(f"{BALANCE_PREFIX}{user_id}") or 0)

    async def debit(
        self, user_id: str, amount_cents: int, order_id: Optional[str] = None, kind: str = "order_payment"
    ) -> int:
        """Debit the wallet; the balance never goes negative. Returns the new balance."""
        ok, balance = await self.redis_client.eval_script(
            _LUA_DEBIT, [f"{BALANCE_PREFIX}{user_id}"], [amount_cents]
        )
        if int(ok) != 1:
            raise InsufficientFunds(balance_cents=int(balance), required_cents=amount_cents)
        await self.record_transaction(user_id, -amount_cents, kind, order_id)
        return int(balance)

    async def credit(self, user_id: str, amount_cents: int, reason: str, order_id: Optional[str] = None) -> int:
        balance = await self.redis_client.client.incrby(f"{BALANCE_PREFIX}{user_id}", amount_cents)
        await self.record_transaction(user_id, amount_cents, reason, order_id)
        return int(balance)

    async def record_transaction(
        self, user_id: str, amount_cents: int, kind: str, order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        entry = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "amount_cents": amount_cents,
            "kind": kind,
            "order_id": order_id,
            "created_at": to_iso(self.clock()),
        }
        await self.redis_client.client.lpush(f"{TRANSACTIONS_PREFIX}{user_id}", json.dumps(entry))
        self.logger.info("Wallet transaction recorded", **{k: v for k, v in entry.items() if k != "id"})
        return entry

    async def list_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        raw = await self.redis_client.client.lrange(f"{TRANSACTIONS_PREFIX}{user_id}", 0, limit - 1)
        return [json.loads(item) for item in raw]
