"""Retirement of orders whose term ended or that were superseded.

An order with ``auto_renew`` set is charged from the wallet for another term
instead of expiring, as long as the balance covers it.
"""

from datetime import datetime, timedelta
from typing import Any, List, Optional

from models import NotificationType, Order, OrderStatus, ProvisionedMetadata
from utils import Clock, create_contextual_logger, log_exception, to_iso, utc_now
from utils.errors import FulfillmentError, InsufficientFunds, InvalidOrderState, OrderNotFound
from .connection_selector import ConnectionSelector
from .device_api_client import DeviceApiClient
from .notifications import NotificationService
from .order_store import OrderStore
from .proxy_store import ProxyStore
from .quota_manager import QuotaManager
from .wallet import to_cents

RENEWED = "renewed"
UNPAID = "unpaid"
SKIPPED = "skipped"


class OrderExpiryService:
    def __init__(
        self,
        order_store: OrderStore,
        proxy_store: ProxyStore,
        connection_selector: ConnectionSelector,
        quota_manager: QuotaManager,
        device_client: DeviceApiClient,
        notifications: NotificationService,
        wallet: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        self.order_store = order_store
        self.proxy_store = proxy_store
        self.connection_selector = connection_selector
        self.quota_manager = quota_manager
        self.device_client = device_client
        self.notifications = notifications
        self.wallet = wallet
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="order_expiry")

    async def expire_due_orders(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Renew or expire active orders past ``expires_at``. Returns the expired order ids."""
        expired: List[str] = []
        renewed: List[str] = []
        for order_id in await self.order_store.due_for_expiry(now, limit=limit):
            order = await self.order_store.get(order_id)
            if order is not None and order.auto_renew and not order.is_trial:
                outcome = await self.renew_order(order)
                if outcome == RENEWED:
                    renewed.append(order_id)
                if outcome != UNPAID:
                    continue

            try:
                await self.order_store.transition(order_id, OrderStatus.ACTIVE, OrderStatus.EXPIRED)
            except InvalidOrderState:
                # cancelled or already expired by another worker
                continue
            order = await self.order_store.require(order_id)
            await self.retire_order(order)
            await self.notifications.notify_customer(
                NotificationType.ORDER_EXPIRED, user_id=order.user_id, order_id=order_id
            )
            expired.append(order_id)

        if renewed:
            self.logger.info("Orders renewed", count=len(renewed), order_ids=renewed)
        if expired:
            self.logger.info("Orders expired", count=len(expired), order_ids=expired)
        return expired

    async def renew_order(self, order: Order) -> str:
        """Charge the wallet for one more term and push ``expires_at`` out by it.

        Returns ``renewed``, ``unpaid`` when the wallet cannot cover the term
        (the order should expire), or ``skipped`` when another worker renewed
        or ended the order first.
        """
        if self.wallet is None or order.expires_at is None or order.status != OrderStatus.ACTIVE:
            return UNPAID
        amount_cents = to_cents(order.total_amount)
        try:
            await self.wallet.debit(order.user_id, amount_cents, order_id=order.id, kind="order_renewal")
        except InsufficientFunds as e:
            self.logger.info(
                "Auto-renewal declined, wallet balance too low",
                order_id=order.id,
                user_id=order.user_id,
                balance_cents=e.balance_cents,
                required_cents=amount_cents,
            )
            await self.notifications.notify_customer(
                NotificationType.RENEWAL_FAILED,
                user_id=order.user_id,
                order_id=order.id,
                balance=e.balance_cents / 100,
                required=amount_cents / 100,
            )
            return UNPAID

        expires_at = order.expires_at + timedelta(days=order.duration_days)
        try:
            # the guard on the old expiry keeps two workers from renewing twice
            await self.order_store.transition(
                order.id,
                OrderStatus.ACTIVE,
                OrderStatus.ACTIVE,
                set_fields={"expires_at": expires_at},
                guard=("expires_at", to_iso(order.expires_at)),
            )
        except (InvalidOrderState, OrderNotFound) as e:
            await self.wallet.credit(order.user_id, amount_cents, "renewal_refund", order_id=order.id)
            self.logger.info("Order changed during renewal, charge refunded", order_id=order.id, error=str(e))
            return SKIPPED

        await self.proxy_store.extend_for_order(order.id, expires_at)
        await self.notifications.notify_customer(
            NotificationType.ORDER_RENEWED,
            user_id=order.user_id,
            order_id=order.id,
            expires_at=to_iso(expires_at),
        )
        self.logger.info(
            "Order renewed from wallet",
            serviceName="OrderExpiryService",
            operationName="renew_order",
            order_id=order.id,
            user_id=order.user_id,
            amount_cents=amount_cents,
            expires_at=to_iso(expires_at),
        )
        return RENEWED

    async def retire_order(self, order: Order) -> None:
        """Release everything an ended order holds.

        Proxy rows go inactive, device grants are revoked (best effort), the
        connection returns to the pool and the confirmed quota is credited back.
        """
        for record in await self.proxy_store.deactivate_for_order(order.id):
            try:
                await self.device_client.delete_proxy_access(record.connection_id, record.grant_id)
            except FulfillmentError as e:
                self.logger.warning(
                    "Failed to revoke proxy grant",
                    order_id=order.id,
                    connection_id=record.connection_id,
                    grant_id=record.grant_id,
                    error=str(e),
                )

        connection_id = order.metadata.connection_id if isinstance(order.metadata, ProvisionedMetadata) else None
        try:
            if connection_id:
                await self.connection_selector.free_connection(connection_id)
            else:
                await self.connection_selector.release_connection(order.id)
            await self.quota_manager.return_capacity(order.id)
        except Exception as e:
            log_exception(self.logger, e, "Failed to release resources of ended order", order_id=order.id)
            raise

        self.logger.info(
            "Order resources retired",
            serviceName="OrderExpiryService",
            operationName="retire_order",
            order_id=order.id,
            user_id=order.user_id,
            connection_id=connection_id,
        )
