"""Client for the iProxy device-management API.

Only the contract the fulfillment core depends on is wrapped here: listing
and inspecting connections, granting and revoking proxy access, connection
settings, and IP-rotation action links.
"""

from concurrent.futures import Executor
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import ApplicationConfig
from models import ActionLink, ConnectionDetails, DeviceConnection, ProxyGrant, ProxyProtocol
from utils import to_iso
from utils.connection_state import ConnectionStateManager
from utils.errors import ProviderError
from .provider_client import ProviderApiClient


def _unwrap(payload: Any, key: str) -> Any:
    """Responses come either bare or wrapped in a ``{key: ...}`` envelope."""
    if isinstance(payload, dict) and key in payload:
        return payload[key]
    return payload


class DeviceApiClient(ProviderApiClient):
    provider_name = "device_api"

    def __init__(
        self,
        config: ApplicationConfig,
        state: Optional[ConnectionStateManager] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        super().__init__(
            base_url=config.device_api_url,
            timeout=config.device_api_timeout,
            user_agent=f"Proxy-Fulfillment/{config.app_version}",
            retry_attempts=config.device_api_retry_attempts,
            state=state if state is not None else ConnectionStateManager.for_device_api(config),
            executor=executor,
        )
        self.api_key = config.device_api_key

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def list_connections(self) -> List[DeviceConnection]:
        payload = await self._make_async_request("GET", "/connections")
        return [DeviceConnection.model_validate(item) for item in _unwrap(payload, "connections") or []]

    async def get_connection(self, connection_id: str) -> ConnectionDetails:
        payload = _unwrap(await self._make_async_request("GET", f"/connections/{connection_id}"), "connection")
        basic_info = payload.get("basic_info") or {}
        server_geo = basic_info.get("server_geo") or {}
        ip_change = (basic_info.get("app_data") or {}).get("ip_change") or {}
        interval = ip_change.get("interval_minutes", ip_change.get("interval"))

        country = server_geo.get("country")
        return ConnectionDetails(
            connection_id=connection_id,
            country=country.upper() if country else None,
            city=server_geo.get("city"),
            ip_change_enabled=bool(ip_change.get("mode") or ip_change.get("enabled")),
            ip_change_interval_minutes=int(interval) if interval else None,
            raw=payload,
        )

    async def grant_proxy_access(
        self,
        connection_id: str,
        protocol: ProxyProtocol,
        login: str,
        password: str,
        expires_at: Optional[datetime],
        description: str = "",
    ) -> ProxyGrant:
        """Create proxy access for one protocol. Not retried: each call creates a grant."""
        body = {
            "listen_service": protocol.value,
            "auth_type": "userpass",
            "auth": {"login": login, "password": password},
            "description": description,
            "expires_at": to_iso(expires_at) or None,
        }
        payload = _unwrap(
            await self._make_async_request(
                "POST", f"/connections/{connection_id}/proxy-access", data=body, retry=False
            ),
            "proxy_access",
        )
        try:
            auth = payload.get("auth") or {}
            return ProxyGrant(
                id=str(payload["id"]),
                protocol=protocol,
                ip=payload["ip"],
                port=int(payload["port"]),
                hostname=payload.get("hostname") or payload["ip"],
                login=auth.get("login", login),
                password=auth.get("password", password),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Unexpected proxy access response: {e}", provider=self.provider_name
            ) from e

    async def delete_proxy_access(self, connection_id: str, access_id: str) -> None:
        await self._make_async_request("DELETE", f"/connections/{connection_id}/proxy-access/{access_id}")

    async def update_connection_settings(
        self, connection_id: str, ip_change_enabled: bool, interval_minutes: int
    ) -> Dict[str, Any]:
        body = {
            "ip_change": {
                "enabled": ip_change_enabled,
                "interval_minutes": interval_minutes,
            }
        }
        return await self._make_async_request("PATCH", f"/connections/{connection_id}/settings", data=body)

    async def get_action_links(self, connection_id: str) -> List[ActionLink]:
        payload = await self._make_async_request("GET", f"/connections/{connection_id}/action-links")
        return [
            ActionLink(id=str(item["id"]), action=item.get("action", ""), link=item.get("link"))
            for item in _unwrap(payload, "action_links") or []
        ]

    async def create_action_link(self, connection_id: str, action: str, description: str = "") -> ActionLink:
        payload = _unwrap(
            await self._make_async_request(
                "POST",
                f"/connections/{connection_id}/action-links",
                data={"action": action, "description": description},
                retry=False,
            ),
            "action_link",
        )
        return ActionLink(id=str(payload["id"]), action=payload.get("action", action), link=payload.get("link"))

    async def trigger_ip_change(self, change_url: str) -> Dict[str, Any]:
        """Call a ``changeip`` action link. Returns the provider's response body."""
        return await self._make_async_request("GET", change_url, retry=False) or {}
