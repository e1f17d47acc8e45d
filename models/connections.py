"""Connection pool, device API and provisioned proxy models."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import ConnectionClass, ProvisioningOutcome, ProxyProtocol, ProxyStatus, RotationMode


class Connection(BaseModel):
    """One physical proxy-capable device tracked in the pool."""

    model_config = ConfigDict(use_enum_values=True)

    connection_id: str
    name: str = ""
    connection_class: ConnectionClass = ConnectionClass.ACTIVE
    is_occupied: bool = False
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    allocated_order_id: Optional[str] = None
    proxy_access: List[str] = Field(default_factory=list)
    proxy_ids: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SelectedConnection(BaseModel):
    """Result of the connection selector."""

    connection_id: str
    is_active: bool = True
    not_configured: bool = False

    @classmethod
    def from_class(cls, connection_id: str, connection_class: str) -> "SelectedConnection":
        return cls(
            connection_id=connection_id,
            is_active=connection_class != ConnectionClass.INACTIVE.value,
            not_configured=connection_class == ConnectionClass.UNCONFIGURED.value,
        )


class ProxyGrant(BaseModel):
    """Access granted by the device API for one protocol."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    protocol: ProxyProtocol
    ip: str
    port: int
    hostname: str
    login: str
    password: str

    @property
    def access_string(self) -> str:
        return f"{self.ip}:{self.port}:{self.login}:{self.password}"


class ConnectionDetails(BaseModel):
    connection_id: str
    country: Optional[str] = None
    city: Optional[str] = None
    ip_change_enabled: bool = False
    ip_change_interval_minutes: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ActionLink(BaseModel):
    id: str
    action: str
    link: Optional[str] = None


class DeviceConnection(BaseModel):
    """Connection as listed by the device API, used for pool sync."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    app_data: Optional[Dict[str, Any]] = None
    plan_info: Optional[Dict[str, Any]] = None


class ProxyRecord(BaseModel):
    """Persisted proxy credential, one per protocol per order."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    order_id: str
    user_id: str
    connection_id: str
    grant_id: str
    protocol: ProxyProtocol
    host: str
    port: int
    username: str
    encrypted_password: str
    status: ProxyStatus = ProxyStatus.ACTIVE
    country: Optional[str] = None
    change_url: Optional[str] = None
    action_link_id: Optional[str] = None
    rotation_mode: RotationMode = RotationMode.NONE
    rotation_interval_min: Optional[int] = None
    last_ip: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class ProvisioningResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_id: str
    outcome: ProvisioningOutcome
    connection_id: Optional[str] = None
    proxy_ids: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    message: Optional[str] = None


class SyncSummary(BaseModel):
    total: int = 0
    active: int = 0
    inactive: int = 0
    unconfigured: int = 0
    skipped: int = 0
