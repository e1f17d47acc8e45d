"""Request and response bodies for the HTTP routers."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .connections import ProvisioningResult, ProxyRecord
from .enums import ConnectionClass, RotationMode
from .orders import RotationConfig
from .quota import ReservationResult


class CheckoutRequest(BaseModel):
    plan_id: str
    quantity: int = Field(default=1, ge=1, le=100)
    ip_change_enabled: bool = False
    ip_change_interval_minutes: int = Field(default=0, ge=0)
    auto_renew: bool = False

    @property
    def rotation(self) -> RotationConfig:
        return RotationConfig(
            ip_change_enabled=self.ip_change_enabled,
            interval_minutes=self.ip_change_interval_minutes,
        )


class TrialRequest(BaseModel):
    plan_id: str


class CheckoutResponse(BaseModel):
    order_id: str
    status: str
    reservation: Optional[ReservationResult] = None
    invoice_url: Optional[str] = None
    payment_id: Optional[str] = None
    provisioning: Optional[ProvisioningResult] = None
    message: Optional[str] = None


class AdminActivateRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)


class QuotaUpdateRequest(BaseModel):
    available: int = Field(..., ge=0)


class RegisterConnectionRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    connection_id: str = Field(..., min_length=1)
    connection_class: ConnectionClass = ConnectionClass.ACTIVE
    name: str = ""


class ProxyView(BaseModel):
    """Customer-facing proxy row; the stored password never leaves the service."""

    id: str
    order_id: str
    protocol: str
    host: str
    port: int
    username: str
    status: str
    country: Optional[str] = None
    last_ip: Optional[str] = None
    rotation_mode: str
    rotation_interval_min: Optional[int] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ProxyRecord) -> "ProxyView":
        return cls.model_validate(record.model_dump())


class SweepResult(BaseModel):
    released: int


class RotationSettingsRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    rotation_mode: RotationMode
    rotation_interval_min: Optional[int] = Field(default=None, ge=1)


class AutoRenewRequest(BaseModel):
    auto_renew: bool


class AutoRenewResponse(BaseModel):
    order_id: str
    auto_renew: bool
