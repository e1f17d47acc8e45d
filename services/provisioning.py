"""Provisioning pipeline.

Turns a paid order and an allocated connection into working proxy
credentials. Per order the states are::

    pending|processing -> processing               (device needs activation)
    pending|processing -> provisioning -> active
                          provisioning -> previous status (grant failed)

``provisioning`` is a claim: only the holder of ``provisioning_claim`` may
record the result, so two concurrent activations of one order cannot both
issue credentials.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config import ApplicationConfig
from models import (
    ManualProvisioningMetadata,
    NotificationType,
    Order,
    OrderStatus,
    ProvisionedMetadata,
    ProvisioningOutcome,
    ProvisioningResult,
    ProxyGrant,
    ProxyProtocol,
    ProxyRecord,
    RotationConfig,
    SelectedConnection,
)
from utils import Clock, create_contextual_logger, from_iso, log_exception, utc_now
from utils.crypto import PasswordCipher, generate_password, shared_username
from utils.errors import (
    FulfillmentError,
    InvalidOrderState,
    PartialProvisioningFailure,
    ProvisioningConflict,
)
from utils.metrics import provisioning_outcomes
from .connection_selector import ConnectionSelector
from .device_api_client import DeviceApiClient
from .notifications import NotificationService
from .order_store import OrderStore, order_key
from .proxy_store import ProxyStore
from .redis_client import RedisClient

CLAIM_FIELD = "provisioning_claim"
CLAIMED_AT_FIELD = "provisioning_claimed_at"
CHANGE_IP_ACTION = "changeip"
DEVICE_NOT_ACTIVE_REASON = "connection requires activation on the device"


class ProvisioningPipeline:
    def __init__(
        self,
        config: ApplicationConfig,
        redis_client: RedisClient,
        order_store: OrderStore,
        connection_selector: ConnectionSelector,
        proxy_store: ProxyStore,
        device_client: DeviceApiClient,
        notifications: NotificationService,
        cipher: PasswordCipher,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.redis_client = redis_client
        self.order_store = order_store
        self.connection_selector = connection_selector
        self.proxy_store = proxy_store
        self.device_client = device_client
        self.notifications = notifications
        self.cipher = cipher
        self.clock = clock
        self.logger = create_contextual_logger(__name__, service="provisioning")

    async def provision(
        self,
        order_id: str,
        connection: SelectedConnection,
        user_id: str,
        expires_at: Optional[datetime] = None,
        rotation: Optional[RotationConfig] = None,
        activated_by: Optional[str] = None,
    ) -> ProvisioningResult:
        """Provision ``order_id`` on ``connection``.

        Re-running for an order that is already active returns ``already_active``
        without touching the device API. Grant failures leave the order in its
        previous status so the whole call can be retried.
        """
        order = await self.order_store.require(order_id)
        if order.status == OrderStatus.ACTIVE:
            return self.already_active_result(order)

        rotation = rotation or order.rotation
        if not connection.is_active:
            return await self._park_for_manual_activation(order, connection, rotation)

        if connection.not_configured:
            await self.notifications.notify_admin(
                NotificationType.CONNECTION_NOT_CONFIGURED,
                order_id=order_id,
                connection_id=connection.connection_id,
            )

        expires_at = order.expires_at or expires_at or self.clock() + timedelta(days=order.duration_days)
        claim, previous = await self._claim(order)

        try:
            grants = await self._grant_pair(connection.connection_id, user_id, order_id, expires_at)
        except Exception as e:
            provisioning_outcomes.labels(outcome="grant_failed").inc()
            log_exception(
                self.logger,
                e,
                "Proxy grant failed, order left for retry",
                order_id=order_id,
                connection_id=connection.connection_id,
            )
            await self._release_claim(order_id, claim, previous)
            raise

        extras = await self._collect_connection_metadata(connection.connection_id, order_id, rotation)
        proxy_ids = await self._record(
            order, claim, connection.connection_id, user_id, grants, extras, expires_at, rotation, activated_by
        )

        provisioning_outcomes.labels(outcome=ProvisioningOutcome.ACTIVE.value).inc()
        self.logger.info(
            "Order provisioned",
            serviceName="ProvisioningPipeline",
            operationName="provision",
            order_id=order_id,
            user_id=user_id,
            connection_id=connection.connection_id,
            proxy_ids=proxy_ids,
            expires_at=expires_at.isoformat(),
            activated_by=activated_by,
        )
        await self.notifications.notify_customer(
            NotificationType.PROXY_READY,
            user_id=user_id,
            order_id=order_id,
            proxy_ids=proxy_ids,
            expires_at=expires_at.isoformat(),
        )
        return ProvisioningResult(
            order_id=order_id,
            outcome=ProvisioningOutcome.ACTIVE,
            connection_id=connection.connection_id,
            proxy_ids=proxy_ids,
            expires_at=expires_at,
        )

    def already_active_result(self, order: Order) -> ProvisioningResult:
        provisioning_outcomes.labels(outcome=ProvisioningOutcome.ALREADY_ACTIVE.value).inc()
        metadata = order.metadata
        self.logger.info("Order already active, nothing to provision", order_id=order.id)
        return ProvisioningResult(
            order_id=order.id,
            outcome=ProvisioningOutcome.ALREADY_ACTIVE,
            connection_id=getattr(metadata, "connection_id", None),
            proxy_ids=getattr(metadata, "proxy_ids", []),
            expires_at=order.expires_at,
        )

    async def _park_for_manual_activation(
        self, order: Order, connection: SelectedConnection, rotation: RotationConfig
    ) -> ProvisioningResult:
        metadata = ManualProvisioningMetadata(
            pending_reason=DEVICE_NOT_ACTIVE_REASON,
            connection_id=connection.connection_id,
            rotation=rotation,
        )
        await self.order_store.transition(
            order.id,
            [OrderStatus.PENDING, OrderStatus.PROCESSING],
            OrderStatus.PROCESSING,
            set_fields={"metadata": metadata},
        )
        await self.notifications.manual_provisioning_required(
            order.id,
            order.user_id,
            {"connection_id": connection.connection_id, "reason": DEVICE_NOT_ACTIVE_REASON},
        )
        provisioning_outcomes.labels(outcome=ProvisioningOutcome.PENDING_MANUAL_PROVISIONING.value).inc()
        self.logger.warning(
            "Order parked for manual provisioning",
            serviceName="ProvisioningPipeline",
            operationName="provision",
            order_id=order.id,
            connection_id=connection.connection_id,
        )
        return ProvisioningResult(
            order_id=order.id,
            outcome=ProvisioningOutcome.PENDING_MANUAL_PROVISIONING,
            connection_id=connection.connection_id,
            message=DEVICE_NOT_ACTIVE_REASON,
        )

    async def _claim(self, order: Order) -> Tuple[str, str]:
        """Move the order to ``provisioning``. Returns the claim token and the status to revert to."""
        now = self.clock()
        claim = str(uuid.uuid4())
        fields = {CLAIM_FIELD: claim, CLAIMED_AT_FIELD: now}
        try:
            previous = await self.order_store.transition(
                order.id,
                [OrderStatus.PENDING, OrderStatus.PROCESSING],
                OrderStatus.PROVISIONING,
                set_fields=fields,
            )
            return claim, previous
        except InvalidOrderState as e:
            if e.details.get("current_status") != OrderStatus.PROVISIONING.value:
                raise

        held = await self.order_store.get_field(order.id, CLAIM_FIELD)
        claimed_at = from_iso(await self.order_store.get_field(order.id, CLAIMED_AT_FIELD))
        if claimed_at is not None and now - claimed_at < timedelta(seconds=self.config.provisioning_claim_timeout):
            raise ProvisioningConflict(
                f"Order {order.id} is already being provisioned", order_id=order.id
            )

        try:
            await self.order_store.transition(
                order.id,
                OrderStatus.PROVISIONING,
                OrderStatus.PROVISIONING,
                set_fields=fields,
                guard=(CLAIM_FIELD, held or ""),
            )
        except InvalidOrderState as e:
            raise ProvisioningConflict(
                f"Order {order.id} is already being provisioned", order_id=order.id
            ) from e

        # a crashed run may have issued credentials, so failures now need review
        self.logger.warning("Reclaimed stale provisioning claim", order_id=order.id, stale_claim=held)
        return claim, OrderStatus.PROCESSING.value

    async def _release_claim(self, order_id: str, claim: str, previous: str) -> None:
        try:
            await self.order_store.transition(
                order_id,
                OrderStatus.PROVISIONING,
                OrderStatus(previous),
                set_fields={CLAIM_FIELD: None, CLAIMED_AT_FIELD: None},
                guard=(CLAIM_FIELD, claim),
            )
        except FulfillmentError as e:
            log_exception(self.logger, e, "Failed to release provisioning claim", order_id=order_id)

    async def _grant_pair(
        self, connection_id: str, user_id: str, order_id: str, expires_at: datetime
    ) -> List[ProxyGrant]:
        """Grant HTTP and SOCKS5 access with one shared login. Both or neither."""
        login = shared_username(user_id)
        password = generate_password()
        description = f"order {order_id}"

        http_grant = await self.device_client.grant_proxy_access(
            connection_id, ProxyProtocol.HTTP, login, password, expires_at, description
        )
        try:
            socks_grant = await self.device_client.grant_proxy_access(
                connection_id, ProxyProtocol.SOCKS5, login, password, expires_at, description
            )
        except Exception:
            await self._revoke_grant(connection_id, http_grant.id, order_id)
            raise
        return [http_grant, socks_grant]

    async def _revoke_grant(self, connection_id: str, grant_id: str, order_id: str) -> None:
        try:
            await self.device_client.delete_proxy_access(connection_id, grant_id)
            self.logger.info(
                "Rolled back HTTP grant after SOCKS5 failure",
                order_id=order_id,
                connection_id=connection_id,
                grant_id=grant_id,
            )
        except Exception as e:
            log_exception(
                self.logger,
                e,
                "Failed to revoke orphaned proxy grant",
                order_id=order_id,
                connection_id=connection_id,
                grant_id=grant_id,
            )
            await self.notifications.notify_admin(
                NotificationType.CREDENTIAL_NOT_RECORDED,
                order_id=order_id,
                connection_id=connection_id,
                grant_ids=[grant_id],
                error=str(e),
            )

    async def _collect_connection_metadata(
        self, connection_id: str, order_id: str, rotation: RotationConfig
    ) -> Dict[str, Any]:
        """Best effort. Credentials are already valid, so nothing here can fail the order."""
        extras: Dict[str, Any] = {"country": None, "change_url": None, "action_link_id": None}

        try:
            details = await self.device_client.get_connection(connection_id)
            extras["country"] = details.country
        except Exception as e:
            self.logger.warning(
                "Connection details unavailable", order_id=order_id, connection_id=connection_id, error=str(e)
            )

        try:
            links = await self.device_client.get_action_links(connection_id)
            link = next((link for link in links if link.action == CHANGE_IP_ACTION), None)
            if link is None:
                link = await self.device_client.create_action_link(
                    connection_id, CHANGE_IP_ACTION, f"order {order_id}"
                )
            extras["change_url"] = link.link
            extras["action_link_id"] = link.id
        except Exception as e:
            self.logger.warning(
                "IP change link unavailable", order_id=order_id, connection_id=connection_id, error=str(e)
            )

        if rotation.enabled:
            try:
                await self.device_client.update_connection_settings(
                    connection_id, True, rotation.interval_minutes
                )
            except Exception as e:
                self.logger.warning(
                    "Rotation settings not applied",
                    order_id=order_id,
                    connection_id=connection_id,
                    interval_minutes=rotation.interval_minutes,
                    error=str(e),
                )
        return extras

    async def _record(
        self,
        order: Order,
        claim: str,
        connection_id: str,
        user_id: str,
        grants: List[ProxyGrant],
        extras: Dict[str, Any],
        expires_at: datetime,
        rotation: RotationConfig,
        activated_by: Optional[str],
    ) -> List[str]:
        """Write proxies, connection occupancy and the active order in one transaction."""
        now = self.clock()
        grant_ids = [grant.id for grant in grants]
        try:
            records = [
                ProxyRecord(
                    id=str(uuid.uuid4()),
                    order_id=order.id,
                    user_id=user_id,
                    connection_id=connection_id,
                    grant_id=grant.id,
                    protocol=grant.protocol,
                    host=grant.hostname,
                    port=grant.port,
                    username=grant.login,
                    encrypted_password=self.cipher.encrypt(grant.password),
                    country=extras["country"],
                    change_url=extras["change_url"],
                    action_link_id=extras["action_link_id"],
                    rotation_mode=rotation.mode,
                    rotation_interval_min=rotation.interval_minutes if rotation.enabled else None,
                    expires_at=expires_at,
                    created_at=now,
                )
                for grant in grants
            ]
            proxy_ids = [record.id for record in records]
            metadata = ProvisionedMetadata(
                connection_id=connection_id,
                rotation=rotation,
                proxy_ids=proxy_ids,
                country=extras["country"],
                manually_activated_by=activated_by,
                manually_activated_at=now if activated_by else None,
            )
            order_fields = {
                "metadata": metadata,
                "start_at": order.start_at or now,
                CLAIM_FIELD: None,
                CLAIMED_AT_FIELD: None,
            }

            key = order_key(order.id)
            async with self.redis_client.client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                status, held = await pipe.hmget(key, "status", CLAIM_FIELD)
                if status != OrderStatus.PROVISIONING.value or held != claim:
                    raise ProvisioningConflict(
                        f"Order {order.id} changed while provisioning", order_id=order.id, status=status
                    )
                pipe.multi()
                self.proxy_store.queue_records(pipe, records)
                self.connection_selector.queue_occupy(
                    pipe,
                    connection_id,
                    user_id,
                    order.id,
                    [self.cipher.encrypt(grant.access_string) for grant in grants],
                    proxy_ids,
                    expires_at,
                )
                self.order_store.queue_activation(pipe, order.id, expires_at, order_fields)
                await pipe.execute()
            return proxy_ids
        except Exception as e:
            provisioning_outcomes.labels(outcome="credential_not_recorded").inc()
            self.logger.critical(
                "Credential issued but not recorded",
                serviceName="ProvisioningPipeline",
                operationName="provision",
                order_id=order.id,
                connection_id=connection_id,
                grant_ids=grant_ids,
                error=str(e),
                exc_info=True,
            )
            await self.notifications.notify_admin(
                NotificationType.CREDENTIAL_NOT_RECORDED,
                order_id=order.id,
                connection_id=connection_id,
                grant_ids=grant_ids,
                error=str(e),
            )
            raise PartialProvisioningFailure(order.id, connection_id, grant_ids, str(e)) from e
