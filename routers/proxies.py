"""Customer proxy operations."""

from fastapi import APIRouter, Depends

from models import ProxyView, RotationSettingsRequest
from services import ProxyStore
from .dependencies import get_proxy_store, get_user_id

router = APIRouter(prefix="/proxies", tags=["proxies"])


@router.post("/{proxy_id}/rotate", response_model=ProxyView)
async def rotate_proxy_ip(
    proxy_id: str,
    user_id: str = Depends(get_user_id),
    proxy_store: ProxyStore = Depends(get_proxy_store),
) -> ProxyView:
    """Trigger an exit IP change on the device behind the proxy."""
    record = await proxy_store.rotate_ip(proxy_id, user_id=user_id)
    return ProxyView.from_record(record)


@router.patch("/{proxy_id}/settings", response_model=ProxyView)
async def update_proxy_settings(
    proxy_id: str,
    body: RotationSettingsRequest,
    user_id: str = Depends(get_user_id),
    proxy_store: ProxyStore = Depends(get_proxy_store),
) -> ProxyView:
    record = await proxy_store.update_rotation_settings(
        proxy_id, body.rotation_mode, body.rotation_interval_min, user_id=user_id
    )
    return ProxyView.from_record(record)
