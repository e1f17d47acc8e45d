"""Checkout flows: crypto invoice, wallet payment and free trial.

Each flow creates the order first and then reserves quota for it. Any failure
before the payment is captured undoes both, so an abandoned checkout leaves
neither an order row nor a hold behind.
"""

import uuid
from decimal import Decimal
from typing import Optional

from config import ApplicationConfig
from models import (
    AutoRenewResponse,
    CheckoutResponse,
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    PendingPaymentMetadata,
    Plan,
    ReservationStatus,
    RotationConfig,
    TrialMetadata,
)
from utils import Clock, create_contextual_logger, utc_now
from utils.errors import FulfillmentError, InsufficientFunds, InvalidOrderState, OrderNotFound
from .nowpayments_client import NowPaymentsClient
from .order_activation import OrderActivationService
from .order_store import OrderStore
from .payment_reconciliation import build_order_reference
from .payment_store import PaymentStore
from .plan_catalog import PlanCatalog
from .quota_manager import QuotaManager
from .wallet import WalletLedger, to_cents

LIVE_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.PROVISIONING.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.ACTIVE.value,
)


class CheckoutService:
    def __init__(
        self,
        config: ApplicationConfig,
        plan_catalog: PlanCatalog,
        order_store: OrderStore,
        quota_manager: QuotaManager,
        payment_store: PaymentStore,
        wallet: WalletLedger,
        nowpayments: NowPaymentsClient,
        activation: OrderActivationService,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.plan_catalog = plan_catalog
        self.order_store = order_store
        self.quota_manager = quota_manager
        self.payment_store = payment_store
        self.wallet = wallet
        self.nowpayments = nowpayments
        self.activation = activation
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="checkout")

    def _new_order(
        self,
        user_id: str,
        plan: Plan,
        quantity: int,
        total: Decimal,
        metadata,
        duration_days: Optional[int] = None,
        with_reference: bool = True,
        auto_renew: bool = False,
    ) -> Order:
        now = self.clock()
        return Order(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan_id=plan.id,
            status=OrderStatus.PENDING,
            quantity=quantity,
            total_amount=total,
            currency=self.config.price_currency,
            reference=build_order_reference(user_id, now) if with_reference else None,
            duration_days=duration_days or plan.duration_days,
            auto_renew=auto_renew,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )

    async def _abandon(self, order_id: str, reason: str) -> None:
        """Undo a checkout that did not capture payment."""
        try:
            await self.quota_manager.release_reservation(order_id, reason=reason)
        except FulfillmentError as e:
            self.logger.warning("Hold not released for abandoned checkout", order_id=order_id, error=str(e))
        await self.order_store.delete(order_id)
        self.logger.info("Checkout abandoned", order_id=order_id, reason=reason)

    async def _create_and_reserve(self, order: Order):
        await self.order_store.create(order)
        try:
            return await self.quota_manager.reserve_quota(order.id, order.user_id, order.quantity)
        except FulfillmentError:
            await self.order_store.delete(order.id)
            raise

    async def create_crypto_invoice(
        self,
        user_id: str,
        plan_id: str,
        quantity: int = 1,
        rotation: Optional[RotationConfig] = None,
        auto_renew: bool = False,
    ) -> CheckoutResponse:
        plan = await self.plan_catalog.get_plan(plan_id)
        await self.quota_manager.check_availability(quantity)

        total = plan.price_usd_month * quantity
        order = self._new_order(
            user_id,
            plan,
            quantity,
            total,
            PendingPaymentMetadata(
                rotation=rotation or RotationConfig(),
                payment_provider=PaymentProvider.NOWPAYMENTS.value,
            ),
            auto_renew=auto_renew,
        )
        reservation = await self._create_and_reserve(order)

        base_url = self.config.public_base_url
        try:
            invoice = await self.nowpayments.create_invoice(
                price_amount=total,
                price_currency=self.config.price_currency,
                pay_currency=self.config.pay_currency,
                order_reference=order.reference,
                description=f"{plan.name} x{quantity}",
                ipn_callback_url=f"{base_url}/webhooks/nowpayments",
                success_url=f"{base_url}/orders/{order.id}?payment=success",
                cancel_url=f"{base_url}/orders/{order.id}?payment=cancelled",
            )
        except FulfillmentError:
            await self._abandon(order.id, "invoice_failed")
            raise

        payment, _ = await self.payment_store.upsert(
            PaymentProvider.NOWPAYMENTS.value,
            order.reference,
            {
                "order_id": order.id,
                "user_id": user_id,
                "status": PaymentStatus.PENDING,
                "is_final": False,
                "amount": total,
                "currency": self.config.price_currency,
                "invoice_uuid": invoice.id,
                "invoice_url": invoice.invoice_url,
            },
        )
        self.logger.info(
            "Crypto checkout started",
            serviceName="CheckoutService",
            operationName="create_crypto_invoice",
            order_id=order.id,
            user_id=user_id,
            quantity=quantity,
            invoice_id=invoice.id,
            reservation_expires_at=reservation.expires_at.isoformat(),
        )
        return CheckoutResponse(
            order_id=order.id,
            status=OrderStatus.PENDING.value,
            reservation=reservation,
            invoice_url=invoice.invoice_url,
            payment_id=payment.id,
        )

    async def pay_with_wallet(
        self,
        user_id: str,
        plan_id: str,
        quantity: int = 1,
        rotation: Optional[RotationConfig] = None,
        auto_renew: bool = False,
    ) -> CheckoutResponse:
        """Instant checkout: debit the wallet, confirm the hold and provision."""
        plan = await self.plan_catalog.get_plan(plan_id)
        await self.quota_manager.check_availability(quantity)

        total = plan.price_usd_month * quantity
        amount_cents = to_cents(total)
        balance = await self.wallet.get_balance_cents(user_id)
        if balance < amount_cents:
            raise InsufficientFunds(balance_cents=balance, required_cents=amount_cents)

        order = self._new_order(
            user_id,
            plan,
            quantity,
            total,
            PendingPaymentMetadata(
                rotation=rotation or RotationConfig(),
                payment_provider=PaymentProvider.WALLET.value,
            ),
            auto_renew=auto_renew,
        )
        reservation = await self._create_and_reserve(order)

        try:
            await self.wallet.debit(user_id, amount_cents, order_id=order.id)
        except FulfillmentError:
            await self._abandon(order.id, "wallet_debit_failed")
            raise

        try:
            await self.quota_manager.confirm_reservation(order.id)
        except FulfillmentError:
            await self.wallet.credit(user_id, amount_cents, "order_refund", order_id=order.id)
            await self._abandon(order.id, "confirm_failed")
            raise

        payment, _ = await self.payment_store.upsert(
            PaymentProvider.WALLET.value,
            order.reference,
            {
                "order_id": order.id,
                "user_id": user_id,
                "status": PaymentStatus.PAID,
                "is_final": True,
                "amount": total,
                "currency": self.config.price_currency,
                "paid_at": self.clock(),
            },
        )

        provisioning = None
        message = None
        try:
            provisioning = await self.activation.activate_paid_order(order.id, park_on_provider_error=True)
        except FulfillmentError as e:
            # paid and confirmed; the order waits for a retry or an operator
            self.logger.error(
                "Activation after wallet payment failed",
                order_id=order.id,
                error_code=e.code,
                error=e.message,
            )
            message = e.message

        current = await self.order_store.require(order.id)
        return CheckoutResponse(
            order_id=order.id,
            status=current.status,
            reservation=reservation,
            payment_id=payment.id,
            provisioning=provisioning,
            message=message,
        )

    async def start_free_trial(self, user_id: str, plan_id: str) -> CheckoutResponse:
        """One zero-cost order per user, only while the user has no live order."""
        plan = await self.plan_catalog.get_plan(plan_id)
        orders = await self.order_store.list_for_user(user_id)
        if any(order.is_trial for order in orders):
            raise InvalidOrderState("Free trial already used", user_id=user_id)
        if any(order.status in LIVE_STATUSES for order in orders):
            raise InvalidOrderState("User already has an active or pending order", user_id=user_id)
        if not await self.order_store.claim_trial(user_id):
            raise InvalidOrderState("Free trial already used", user_id=user_id)

        try:
            await self.quota_manager.check_availability(1)
            order = self._new_order(
                user_id,
                plan,
                1,
                Decimal("0"),
                TrialMetadata(),
                duration_days=self.config.trial_duration_days,
                with_reference=False,
            )
            reservation = await self._create_and_reserve(order)
        except FulfillmentError:
            await self.order_store.release_trial_claim(user_id)
            raise

        provisioning = None
        message = None
        try:
            provisioning = await self.activation.activate_paid_order(order.id, park_on_provider_error=True)
        except FulfillmentError as e:
            self.logger.error("Trial activation failed", order_id=order.id, error_code=e.code, error=e.message)
            message = e.message

        current = await self.order_store.require(order.id)
        self.logger.info("Free trial started", order_id=order.id, user_id=user_id, status=current.status)
        return CheckoutResponse(
            order_id=order.id,
            status=current.status,
            reservation=reservation,
            provisioning=provisioning,
            message=message,
        )

    async def _owned_order(self, order_id: str, user_id: str) -> Order:
        order = await self.order_store.require(order_id)
        if order.user_id != user_id:
            raise OrderNotFound(order_id)
        return order

    async def set_auto_renew(self, order_id: str, user_id: str, enabled: bool) -> AutoRenewResponse:
        """Turn wallet renewal at the end of the term on or off."""
        order = await self._owned_order(order_id, user_id)
        if order.is_trial:
            raise InvalidOrderState("Trial orders cannot renew", order_id=order_id)
        if order.status not in LIVE_STATUSES:
            raise InvalidOrderState(
                f"Order {order_id} is {order.status}, it can no longer renew",
                order_id=order_id,
                current_status=order.status,
            )
        await self.order_store.set_auto_renew(order_id, enabled)
        self.logger.info("Auto-renew updated", order_id=order_id, user_id=user_id, auto_renew=enabled)
        return AutoRenewResponse(order_id=order_id, auto_renew=enabled)

    async def get_reservation_status(self, order_id: str, user_id: str) -> ReservationStatus:
        await self._owned_order(order_id, user_id)
        return await self.quota_manager.get_reservation_status(order_id)

    async def cancel_reservation(self, order_id: str, user_id: str) -> ReservationStatus:
        """Customer abandons a pending checkout: release the hold and cancel the order."""
        order = await self._owned_order(order_id, user_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidOrderState(
                f"Order {order_id} is {order.status}, only pending orders can be cancelled",
                order_id=order_id,
                current_status=order.status,
            )
        if not await self.activation.fail_order(order_id, OrderStatus.CANCELLED):
            raise InvalidOrderState(f"Order {order_id} is no longer pending", order_id=order_id)
        self.logger.info("Checkout cancelled by customer", order_id=order_id, user_id=user_id)
        return await self.quota_manager.get_reservation_status(order_id)
