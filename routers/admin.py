"""Operator endpoints, guarded by the admin API key."""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from models import (
    AdminActivateRequest,
    Connection,
    ProvisioningResult,
    QuotaStatus,
    QuotaUpdateRequest,
    RegisterConnectionRequest,
    SweepResult,
    SyncSummary,
    WebhookAck,
    WebhookEvent,
)
from services import (
    ConnectionSelector,
    DeviceApiClient,
    OrderActivationService,
    PaymentReconciler,
    PaymentStore,
    QuotaManager,
)
from utils import get_logger
from utils.errors import ConnectionNotFound
from .dependencies import (
    get_activation_service,
    get_connection_selector,
    get_device_client,
    get_payment_store,
    get_quota_manager,
    get_reconciler,
    require_admin,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = get_logger(__name__)


@router.post("/orders/{order_id}/activate", response_model=ProvisioningResult)
async def activate_order(
    order_id: str,
    body: AdminActivateRequest,
    activation: OrderActivationService = Depends(get_activation_service),
) -> ProvisioningResult:
    """Finish an order parked for manual provisioning."""
    return await activation.admin_activate(order_id, body.admin_id)


@router.get("/quota", response_model=QuotaStatus)
async def get_quota(quota_manager: QuotaManager = Depends(get_quota_manager)) -> QuotaStatus:
    return await quota_manager.get_quota_status()


@router.put("/quota", response_model=QuotaStatus)
async def set_quota(
    body: QuotaUpdateRequest,
    quota_manager: QuotaManager = Depends(get_quota_manager),
) -> QuotaStatus:
    await quota_manager.set_available(body.available)
    logger.info("Quota set by operator", available=body.available)
    return await quota_manager.get_quota_status()


@router.post("/quota/sweep", response_model=SweepResult)
async def sweep_reservations(quota_manager: QuotaManager = Depends(get_quota_manager)) -> SweepResult:
    """Release lapsed holds now instead of waiting for the maintenance loop."""
    return SweepResult(released=await quota_manager.release_expired_reservations())


@router.post("/connections/sync", response_model=SyncSummary)
async def sync_connections(
    selector: ConnectionSelector = Depends(get_connection_selector),
    device_client: DeviceApiClient = Depends(get_device_client),
) -> SyncSummary:
    return await selector.sync_from_device_api(device_client)


@router.get("/connections", response_model=List[Connection])
async def list_connections(
    selector: ConnectionSelector = Depends(get_connection_selector),
) -> List[Connection]:
    return await selector.list_connections()


@router.post("/connections", response_model=Connection, status_code=status.HTTP_201_CREATED)
async def register_connection(
    body: RegisterConnectionRequest,
    selector: ConnectionSelector = Depends(get_connection_selector),
) -> Connection:
    outcome = await selector.register_connection(body.connection_id, body.connection_class, body.name)
    logger.info("Connection registered by operator", connection_id=body.connection_id, outcome=outcome)
    connection = await selector.get_connection(body.connection_id)
    if connection is None:
        raise ConnectionNotFound(body.connection_id)
    return connection


@router.post("/webhooks/{event_id}/replay", response_model=WebhookAck)
async def replay_webhook(
    event_id: str,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> WebhookAck:
    """Run a logged webhook event through reconciliation again."""
    return await reconciler.replay_event(event_id)


@router.get("/webhooks", response_model=List[WebhookEvent])
async def list_webhook_events(
    limit: int = Query(default=50, ge=1, le=500),
    payment_store: PaymentStore = Depends(get_payment_store),
) -> List[WebhookEvent]:
    """Most recent webhook deliveries, newest first, for picking one to replay."""
    return await payment_store.recent_events(limit=limit)
