"""Unit tests for the order store."""

from datetime import timedelta

import pytest

from models import ManualProvisioningMetadata, OrderStatus
from services.order_store import ACTIVE_EXPIRY_KEY
from utils.errors import InvalidOrderState, OrderNotFound


class TestOrderStore:
    """Test cases for OrderStore."""

    @pytest.mark.asyncio
    async def test_create_and_read_back(self, services, create_order) -> None:
        order = await create_order(reserve=False)

        stored = await services.order_store.get(order.id)

        assert stored == order
        assert stored.metadata.kind == "pending_payment"
        assert (await services.order_store.find_by_reference(order.reference)).id == order.id

    @pytest.mark.asyncio
    async def test_list_for_user(self, services, create_order, clock) -> None:
        first = await create_order(user_id="user-1", reserve=False)
        clock.advance(seconds=5)
        second = await create_order(user_id="user-1", reserve=False)
        await create_order(user_id="user-2", reserve=False)

        orders = await services.order_store.list_for_user("user-1")

        assert [o.id for o in orders] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_transition_returns_previous_status(self, services, create_order) -> None:
        order = await create_order(reserve=False)

        previous = await services.order_store.transition(order.id, OrderStatus.PENDING, OrderStatus.FAILED)

        assert previous == "pending"
        assert (await services.order_store.require(order.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_transition_rejects_unexpected_status(self, services, create_order) -> None:
        order = await create_order(reserve=False)
        await services.order_store.transition(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED)

        with pytest.raises(InvalidOrderState) as exc_info:
            await services.order_store.transition(order.id, OrderStatus.PENDING, OrderStatus.FAILED)

        assert exc_info.value.details["current_status"] == "cancelled"
        assert (await services.order_store.require(order.id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_transition_unknown_order(self, services) -> None:
        with pytest.raises(OrderNotFound):
            await services.order_store.transition("missing", OrderStatus.PENDING, OrderStatus.FAILED)

    @pytest.mark.asyncio
    async def test_transition_guard_field(self, services, create_order) -> None:
        order = await create_order(reserve=False)
        await services.order_store.transition(
            order.id, OrderStatus.PENDING, OrderStatus.PROVISIONING, set_fields={"provisioning_claim": "a"}
        )

        with pytest.raises(InvalidOrderState):
            await services.order_store.transition(
                order.id, OrderStatus.PROVISIONING, OrderStatus.PENDING, guard=("provisioning_claim", "b")
            )

        await services.order_store.transition(
            order.id, OrderStatus.PROVISIONING, OrderStatus.PENDING, guard=("provisioning_claim", "a")
        )
        assert (await services.order_store.require(order.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_set_if_missing_keeps_existing_value(self, services, create_order, clock) -> None:
        order = await create_order(reserve=False)
        first = clock() + timedelta(days=30)
        await services.order_store.transition(
            order.id, OrderStatus.PENDING, OrderStatus.PROCESSING, set_if_missing={"expires_at": first}
        )
        await services.order_store.transition(
            order.id,
            OrderStatus.PROCESSING,
            OrderStatus.PROCESSING,
            set_if_missing={"expires_at": first + timedelta(days=1)},
        )

        assert (await services.order_store.require(order.id)).expires_at == first

    @pytest.mark.asyncio
    async def test_active_orders_are_indexed_for_expiry(self, services, create_order, clock, fake_redis) -> None:
        order = await create_order(reserve=False)
        expires_at = clock() + timedelta(days=30)
        await services.order_store.transition(
            order.id, OrderStatus.PENDING, OrderStatus.ACTIVE, set_fields={"expires_at": expires_at}
        )

        assert await services.order_store.due_for_expiry(expires_at - timedelta(seconds=1)) == []
        assert await services.order_store.due_for_expiry(expires_at) == [order.id]

        await services.order_store.transition(order.id, OrderStatus.ACTIVE, OrderStatus.EXPIRED)
        assert await fake_redis.zscore(ACTIVE_EXPIRY_KEY, order.id) is None

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, services, create_order) -> None:
        order = await create_order(reserve=False)
        metadata = ManualProvisioningMetadata(pending_reason="no connection available")

        await services.order_store.transition(
            order.id, OrderStatus.PENDING, OrderStatus.PROCESSING, set_fields={"metadata": metadata}
        )

        stored = await services.order_store.require(order.id)
        assert stored.metadata == metadata

    @pytest.mark.asyncio
    async def test_delete_removes_indexes(self, services, create_order) -> None:
        order = await create_order(reserve=False)

        await services.order_store.delete(order.id)

        assert await services.order_store.get(order.id) is None
        assert await services.order_store.find_by_reference(order.reference) is None
        assert await services.order_store.list_for_user(order.user_id) == []

    @pytest.mark.asyncio
    async def test_cancel_trial_orders_only_touches_active_trials(self, services, create_order, clock) -> None:
        trial = await create_order(user_id="user-1", total="0", reserve=False)
        await services.order_store.transition(
            trial.id, OrderStatus.PENDING, OrderStatus.ACTIVE, set_fields={"expires_at": clock() + timedelta(days=7)}
        )
        pending_trial = await create_order(user_id="user-1", total="0", reserve=False)
        paid = await create_order(user_id="user-1", reserve=False)

        cancelled = await services.order_store.cancel_trial_orders("user-1", exclude_order_id=paid.id)

        assert [o.id for o in cancelled] == [trial.id]
        stored = await services.order_store.require(trial.id)
        assert stored.status == "cancelled"
        assert stored.expires_at == clock()
        assert (await services.order_store.require(pending_trial.id)).status == "pending"
