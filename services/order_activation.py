"""Order activation after payment, and the admin activation path."""

from datetime import timedelta
from typing import Optional

from models import (
    ManualProvisioningMetadata,
    NotificationType,
    Order,
    OrderStatus,
    ProvisioningOutcome,
    ProvisioningResult,
    ReservationState,
    SelectedConnection,
)
from utils import Clock, create_contextual_logger, utc_now
from utils.errors import (
    AlreadyFinal,
    FulfillmentError,
    InsufficientQuota,
    InvalidOrderState,
    NoConnectionAvailable,
    ProviderError,
    ReservationNotFound,
)
from utils.metrics import provisioning_outcomes
from .connection_selector import ConnectionSelector
from .notifications import NotificationService
from .order_expiry import OrderExpiryService
from .order_store import OrderStore
from .provisioning import ProvisioningPipeline
from .quota_manager import QuotaManager

QUOTA_EXHAUSTED_REASON = "quota exhausted after payment"
NO_CONNECTION_REASON = "no connection available"
PROVIDER_ERROR_REASON = "device api unavailable"


class OrderActivationService:
    """Secures quota for a paid order, retires trials and provisions."""

    def __init__(
        self,
        order_store: OrderStore,
        quota_manager: QuotaManager,
        connection_selector: ConnectionSelector,
        pipeline: ProvisioningPipeline,
        expiry_service: OrderExpiryService,
        notifications: NotificationService,
        clock: Clock = utc_now,
    ) -> None:
        self.order_store = order_store
        self.quota_manager = quota_manager
        self.connection_selector = connection_selector
        self.pipeline = pipeline
        self.expiry_service = expiry_service
        self.notifications = notifications
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="order_activation")

    async def activate_paid_order(self, order_id: str, park_on_provider_error: bool = False) -> ProvisioningResult:
        """Activate an order whose payment is final.

        Only ``pending`` orders are activated. An order that is already active
        is reported as such, anything else is ``InvalidOrderState``.

        A ``ProviderError`` leaves the order ``pending`` so a webhook replay can
        retry it. Callers without a replayable event (wallet, trial) pass
        ``park_on_provider_error`` to hand the order to an operator instead.
        """
        order = await self.order_store.require(order_id)
        if order.status == OrderStatus.ACTIVE:
            return self.pipeline.already_active_result(order)
        if order.status != OrderStatus.PENDING:
            raise InvalidOrderState(
                f"Order {order_id} is {order.status}, expected pending",
                order_id=order_id,
                current_status=order.status,
            )

        if not await self._secure_quota(order):
            return ProvisioningResult(
                order_id=order_id,
                outcome=ProvisioningOutcome.PENDING_MANUAL_PROVISIONING,
                message=QUOTA_EXHAUSTED_REASON,
            )

        if not order.is_trial:
            for trial in await self.order_store.cancel_trial_orders(order.user_id, exclude_order_id=order_id):
                await self.expiry_service.retire_order(trial)

        try:
            return await self._select_and_provision(order)
        except ProviderError as e:
            if park_on_provider_error:
                await self._park(order, PROVIDER_ERROR_REASON)
                await self.notifications.manual_provisioning_required(
                    order.id, order.user_id, {"reason": PROVIDER_ERROR_REASON, "error": e.message}
                )
                provisioning_outcomes.labels(outcome="provider_error").inc()
            raise

    async def _secure_quota(self, order: Order) -> bool:
        """Confirm the checkout hold, or deduct afresh when it is gone.

        Returns False when the order had to be parked because the quota ran
        out while the payment was in flight.
        """
        try:
            await self.quota_manager.confirm_reservation(order.id)
            return True
        except AlreadyFinal as e:
            if e.state == "confirmed":
                return True
            self.logger.warning("Reservation already released, deducting quota again", order_id=order.id)
        except ReservationNotFound:
            self.logger.warning("No reservation for paid order, deducting quota", order_id=order.id)

        try:
            await self.quota_manager.deduct_quota(order.id, order.user_id, order.quantity)
            return True
        except InsufficientQuota as e:
            await self._park(order, QUOTA_EXHAUSTED_REASON)
            await self.notifications.notify_admin(
                NotificationType.QUOTA_EXHAUSTED_AFTER_PAYMENT,
                order_id=order.id,
                user_id=order.user_id,
                available=e.available,
                requested=e.requested,
            )
            provisioning_outcomes.labels(outcome="quota_exhausted").inc()
            return False

    async def _select_and_provision(self, order: Order, activated_by: Optional[str] = None) -> ProvisioningResult:
        try:
            selected = await self.connection_selector.get_available_connection(order.id)
        except NoConnectionAvailable:
            await self._park(order, NO_CONNECTION_REASON)
            await self.notifications.notify_admin(
                NotificationType.NO_CONNECTION_AVAILABLE, order_id=order.id, user_id=order.user_id
            )
            provisioning_outcomes.labels(outcome="no_connection").inc()
            raise

        if activated_by and not selected.is_active:
            # the operator vouches that the device has been brought up
            await self.connection_selector.activate_connection(selected.connection_id)
            selected = SelectedConnection(connection_id=selected.connection_id, is_active=True)

        expires_at = order.expires_at or self.clock() + timedelta(days=order.duration_days)
        try:
            return await self.pipeline.provision(
                order.id,
                selected,
                order.user_id,
                expires_at=expires_at,
                rotation=order.rotation,
                activated_by=activated_by,
            )
        except ProviderError:
            await self.connection_selector.release_connection(order.id)
            raise

    async def _park(self, order: Order, reason: str) -> None:
        metadata = ManualProvisioningMetadata(pending_reason=reason, connection_id=None, rotation=order.rotation)
        try:
            await self.order_store.transition(
                order.id,
                [OrderStatus.PENDING, OrderStatus.PROCESSING],
                OrderStatus.PROCESSING,
                set_fields={"metadata": metadata},
            )
        except InvalidOrderState as e:
            self.logger.warning("Could not park order", order_id=order.id, reason=reason, error=str(e))
            return
        self.logger.warning(
            "Order parked for operator follow-up",
            serviceName="OrderActivationService",
            operationName="park",
            order_id=order.id,
            reason=reason,
        )

    async def admin_activate(self, order_id: str, admin_id: str) -> ProvisioningResult:
        """Operator activation of an order parked in ``processing``.

        A ``pending`` order is accepted too once its hold is confirmed, which
        is where a paid order is left after a failed provisioning attempt.
        """
        order = await self.order_store.require(order_id)
        if order.status == OrderStatus.ACTIVE:
            return self.pipeline.already_active_result(order)

        reservation = await self.quota_manager.get_reservation(order_id)
        confirmed = reservation is not None and reservation.state == ReservationState.CONFIRMED.value
        paid_pending = order.status == OrderStatus.PENDING and confirmed
        if order.status != OrderStatus.PROCESSING and not paid_pending:
            raise InvalidOrderState(
                f"Order {order_id} is {order.status}, expected processing",
                order_id=order_id,
                current_status=order.status,
            )

        if not confirmed:
            await self.quota_manager.check_availability(order.quantity)
            await self.quota_manager.deduct_quota(order.id, order.user_id, order.quantity)

        connection_id = getattr(order.metadata, "connection_id", None)
        if connection_id:
            await self.connection_selector.activate_connection(connection_id)

        result = await self._select_and_provision(order, activated_by=admin_id)
        self.logger.info(
            "Order activated by operator",
            serviceName="OrderActivationService",
            operationName="admin_activate",
            order_id=order_id,
            admin_id=admin_id,
            outcome=result.outcome,
        )
        return result

    async def fail_order(self, order_id: str, status: OrderStatus) -> bool:
        """Move a ``pending`` order to ``failed`` or ``cancelled`` and free its hold.

        Returns False when the order was no longer pending.
        """
        if status not in (OrderStatus.FAILED, OrderStatus.CANCELLED):
            raise ValueError(f"Cannot fail an order into {status}")
        try:
            await self.order_store.transition(order_id, OrderStatus.PENDING, status)
        except InvalidOrderState as e:
            self.logger.info("Order no longer pending, not failing it", order_id=order_id, error=str(e))
            return False

        try:
            await self.quota_manager.release_reservation(order_id, reason=status.value)
        except ReservationNotFound:
            self.logger.debug("No reservation to release", order_id=order_id)
        except FulfillmentError as e:
            self.logger.warning("Reservation not released for failed order", order_id=order_id, error=str(e))
        await self.connection_selector.release_connection(order_id)
        return True
