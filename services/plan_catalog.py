"""Read access to the plan catalog.

Plans are edited elsewhere; this service only stores and reads the fields
checkout needs.
"""

from decimal import Decimal
from typing import List, Optional

from models import Plan
from utils import create_contextual_logger
from utils.errors import PlanNotFound
from utils.hashes import decode_bool, encode_fields
from .redis_client import RedisClient

PLAN_PREFIX = "plan:"
PLAN_INDEX_KEY = "plans"


class PlanCatalog:
    def __init__(self, redis_client: RedisClient) -> None:
        self.redis_client = redis_client
        self.logger = create_contextual_logger(__name__, service="plan_catalog")

    async def upsert_plan(self, plan: Plan) -> Plan:
        client = self.redis_client.client
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(f"{PLAN_PREFIX}{plan.id}", mapping=encode_fields(plan.model_dump()))
            pipe.sadd(PLAN_INDEX_KEY, plan.id)
            await pipe.execute()
        return plan

    async def find_plan(self, plan_id: str) -> Optional[Plan]:
        data = await self.redis_client.client.hgetall(f"{PLAN_PREFIX}{plan_id}")
        if not data:
            return None
        return Plan(
            id=data["id"],
            name=data["name"],
            price_usd_month=Decimal(data["price_usd_month"]),
            duration_days=int(data.get("duration_days") or 30),
            is_active=decode_bool(data.get("is_active", "1")),
        )

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self.find_plan(plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFound(plan_id)
        return plan

    async def list_plans(self) -> List[Plan]:
        plans = []
        for plan_id in sorted(await self.redis_client.client.smembers(PLAN_INDEX_KEY)):
            plan = await self.find_plan(plan_id)
            if plan is not None:
                plans.append(plan)
        return plans
