"""Unit tests for the checkout flows."""

import asyncio
from decimal import Decimal

import pytest

from models import OrderStatus, ProvisioningOutcome, RotationConfig
from utils.errors import (
    InsufficientFunds,
    InsufficientQuota,
    InvalidOrderState,
    OrderNotFound,
    PlanNotFound,
    ProviderError,
)


class TestCryptoCheckout:
    """Test cases for CheckoutService.create_crypto_invoice."""

    @pytest.mark.asyncio
    async def test_invoice_checkout_reserves_quota(self, services, seed_plan, mock_nowpayments) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        rotation = RotationConfig(ip_change_enabled=True, interval_minutes=15)

        response = await services.checkout.create_crypto_invoice("user-1", "plan-basic", quantity=2, rotation=rotation)

        assert response.status == "pending"
        assert response.invoice_url == "https://payments.test/invoice/inv-1"
        assert response.reservation.reserved_connections == 2
        assert await services.quota_manager.get_available() == 1

        kwargs = mock_nowpayments.create_invoice.await_args.kwargs
        assert kwargs["price_amount"] == Decimal("20.00")
        assert kwargs["ipn_callback_url"] == "https://shop.test/webhooks/nowpayments"
        assert kwargs["order_reference"].startswith("payment-")
        assert kwargs["order_reference"].endswith("-user-1")

        order = await services.order_store.require(response.order_id)
        assert order.total_amount == Decimal("20.00")
        assert order.rotation == rotation
        payment = await services.payment_store.get_by_reference(order.reference)
        assert payment.status == "pending"
        assert payment.invoice_uuid == "inv-1"
        assert payment.id == response.payment_id

    @pytest.mark.asyncio
    async def test_invoice_failure_abandons_checkout(self, services, seed_plan, mock_nowpayments) -> None:
        await seed_plan()
        await services.quota_manager.set_available(3)
        mock_nowpayments.create_invoice.side_effect = ProviderError("invoice api down", provider="nowpayments")

        with pytest.raises(ProviderError):
            await services.checkout.create_crypto_invoice("user-1", "plan-basic")

        assert await services.quota_manager.get_available() == 3
        assert await services.order_store.list_for_user("user-1") == []

    @pytest.mark.asyncio
    async def test_insufficient_quota(self, services, seed_plan, mock_nowpayments) -> None:
        await seed_plan()
        await services.quota_manager.set_available(1)

        with pytest.raises(InsufficientQuota) as exc_info:
            await services.checkout.create_crypto_invoice("user-1", "plan-basic", quantity=2)

        assert exc_info.value.http_status == 400
        mock_nowpayments.create_invoice.assert_not_awaited()
        assert await services.order_store.list_for_user("user-1") == []

    @pytest.mark.asyncio
    async def test_unknown_plan(self, services) -> None:
        with pytest.raises(PlanNotFound):
            await services.checkout.create_crypto_invoice("user-1", "plan-missing")


class TestWalletCheckout:
    """Test cases for CheckoutService.pay_with_wallet."""

    @pytest.mark.asyncio
    async def test_wallet_payment_activates_immediately(self, services, seed_plan, seed_connections) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        await seed_connections("c-1")
        await services.checkout.wallet.credit("user-1", 2500, "top_up")

        response = await services.checkout.pay_with_wallet("user-1", "plan-basic")

        assert response.status == "active"
        assert response.provisioning.outcome == ProvisioningOutcome.ACTIVE.value
        assert await services.checkout.wallet.get_balance_cents("user-1") == 1500
        assert await services.quota_manager.get_available() == 2
        payment = await services.payment_store.get(response.payment_id)
        assert payment.provider == "wallet"
        assert payment.status == "paid"

        transactions = await services.checkout.wallet.list_transactions("user-1")
        assert [t["amount_cents"] for t in transactions] == [-1000, 2500]

    @pytest.mark.asyncio
    async def test_device_outage_parks_paid_order_for_operator(
        self, services, seed_plan, seed_connections, mock_device_client, queued_notifications
    ) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        await seed_connections("c-1")
        await services.checkout.wallet.credit("user-1", 1000, "top_up")
        grant = mock_device_client.grant_proxy_access.side_effect
        mock_device_client.grant_proxy_access.side_effect = ProviderError("down", provider="device_api")

        response = await services.checkout.pay_with_wallet("user-1", "plan-basic")

        assert response.status == "processing"
        order = await services.order_store.require(response.order_id)
        assert order.metadata.pending_reason == "device api unavailable"
        assert "manual_provisioning_required" in [m["message_type"] for m in await queued_notifications()]

        mock_device_client.grant_proxy_access.side_effect = grant
        result = await services.activation.admin_activate(response.order_id, "admin-1")

        assert result.outcome == ProvisioningOutcome.ACTIVE.value
        assert await services.checkout.wallet.get_balance_cents("user-1") == 0
        assert await services.quota_manager.get_available() == 2

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, services, seed_plan) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        await services.checkout.wallet.credit("user-1", 500, "top_up")

        with pytest.raises(InsufficientFunds) as exc_info:
            await services.checkout.pay_with_wallet("user-1", "plan-basic")

        assert exc_info.value.http_status == 402
        assert exc_info.value.details == {"balance": 5.0, "required": 10.0}
        assert await services.quota_manager.get_available() == 3

    @pytest.mark.asyncio
    async def test_activation_failure_keeps_payment(self, services, seed_plan) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        await services.checkout.wallet.credit("user-1", 1000, "top_up")

        response = await services.checkout.pay_with_wallet("user-1", "plan-basic")

        assert response.status == "processing"
        assert response.provisioning is None
        assert response.message == "No physical connection is available for provisioning"
        assert await services.checkout.wallet.get_balance_cents("user-1") == 0
        assert (await services.quota_manager.get_reservation(response.order_id)).state == "confirmed"


class TestFreeTrial:
    """Test cases for CheckoutService.start_free_trial."""

    @pytest.mark.asyncio
    async def test_trial_is_provisioned(self, services, seed_plan, seed_connections, clock) -> None:
        await seed_plan(duration_days=30)
        await services.quota_manager.set_available(3)
        await seed_connections("c-1")

        response = await services.checkout.start_free_trial("user-1", "plan-basic")

        assert response.status == "active"
        order = await services.order_store.require(response.order_id)
        assert order.is_trial is True
        assert order.reference is None
        assert order.duration_days == 7
        assert (order.expires_at - clock()).days == 7

    @pytest.mark.asyncio
    async def test_trial_only_once(self, services, seed_plan, seed_connections) -> None:
        await seed_plan()
        await services.quota_manager.set_available(3)
        await seed_connections("c-1", "c-2")
        await services.checkout.start_free_trial("user-1", "plan-basic")

        with pytest.raises(InvalidOrderState):
            await services.checkout.start_free_trial("user-1", "plan-basic")

        assert await services.quota_manager.get_available() == 2

    @pytest.mark.asyncio
    async def test_trial_blocked_by_live_order(self, services, seed_plan, create_order) -> None:
        await seed_plan()
        await services.quota_manager.set_available(3)
        await create_order(user_id="user-1")

        with pytest.raises(InvalidOrderState):
            await services.checkout.start_free_trial("user-1", "plan-basic")

    @pytest.mark.asyncio
    async def test_concurrent_trials_grant_one(self, services, seed_plan, seed_connections) -> None:
        await seed_plan()
        await services.quota_manager.set_available(3)
        await seed_connections("c-1", "c-2")

        results = await asyncio.gather(
            *[services.checkout.start_free_trial("user-1", "plan-basic") for _ in range(3)],
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidOrderState) for r in results) == 2
        assert len(await services.order_store.list_for_user("user-1")) == 1
        assert await services.quota_manager.get_available() == 2

    @pytest.mark.asyncio
    async def test_trial_claim_released_when_checkout_fails(self, services, seed_plan, seed_connections) -> None:
        await seed_plan()
        await services.quota_manager.set_available(0)
        await seed_connections("c-1")

        with pytest.raises(InsufficientQuota):
            await services.checkout.start_free_trial("user-1", "plan-basic")

        await services.quota_manager.set_available(1)
        response = await services.checkout.start_free_trial("user-1", "plan-basic")
        assert response.status == "active"


class TestAutoRenewSetting:
    """Test cases for CheckoutService.set_auto_renew."""

    @pytest.mark.asyncio
    async def test_toggle_auto_renew(self, services, create_order) -> None:
        await services.quota_manager.set_available(3)
        order = await create_order(user_id="user-1")

        response = await services.checkout.set_auto_renew(order.id, "user-1", True)

        assert response.auto_renew is True
        assert (await services.order_store.require(order.id)).auto_renew is True
        await services.checkout.set_auto_renew(order.id, "user-1", False)
        assert (await services.order_store.require(order.id)).auto_renew is False

    @pytest.mark.asyncio
    async def test_wallet_checkout_can_enable_auto_renew(self, services, seed_plan, seed_connections) -> None:
        await seed_plan(price="10.00")
        await services.quota_manager.set_available(3)
        await seed_connections("c-1")
        await services.checkout.wallet.credit("user-1", 1000, "top_up")

        response = await services.checkout.pay_with_wallet("user-1", "plan-basic", auto_renew=True)

        assert (await services.order_store.require(response.order_id)).auto_renew is True

    @pytest.mark.asyncio
    async def test_trial_and_ended_orders_cannot_renew(self, services, create_order) -> None:
        trial = await create_order(user_id="user-1", total="0", reserve=False)
        expired = await create_order(user_id="user-1", status=OrderStatus.EXPIRED, reserve=False)

        with pytest.raises(InvalidOrderState):
            await services.checkout.set_auto_renew(trial.id, "user-1", True)
        with pytest.raises(InvalidOrderState):
            await services.checkout.set_auto_renew(expired.id, "user-1", True)
        with pytest.raises(OrderNotFound):
            await services.checkout.set_auto_renew(expired.id, "user-2", True)


class TestReservationEndpoints:
    """Reservation status and cancellation on behalf of a customer."""

    @pytest.mark.asyncio
    async def test_cancel_releases_hold(self, services, create_order) -> None:
        await services.quota_manager.set_available(3)
        order = await create_order(user_id="user-1", quantity=2)

        status = await services.checkout.cancel_reservation(order.id, "user-1")

        assert status.state == "released"
        assert (await services.order_store.require(order.id)).status == OrderStatus.CANCELLED.value
        assert await services.quota_manager.get_available() == 3

    @pytest.mark.asyncio
    async def test_cancel_twice_is_rejected(self, services, create_order) -> None:
        await services.quota_manager.set_available(3)
        order = await create_order(user_id="user-1")
        await services.checkout.cancel_reservation(order.id, "user-1")

        with pytest.raises(InvalidOrderState):
            await services.checkout.cancel_reservation(order.id, "user-1")

    @pytest.mark.asyncio
    async def test_other_users_order_is_hidden(self, services, create_order) -> None:
        await services.quota_manager.set_available(3)
        order = await create_order(user_id="user-1")

        with pytest.raises(OrderNotFound):
            await services.checkout.get_reservation_status(order.id, "user-2")
        with pytest.raises(OrderNotFound):
            await services.checkout.cancel_reservation(order.id, "user-2")

        assert await services.quota_manager.get_available() == 2
