"""Order, plan and order-metadata models.

Order metadata is a tagged union rather than an open key-value bag. The
``kind`` tag tells which provisioning state the breadcrumbs belong to.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .enums import OrderStatus, RotationMode


class RotationConfig(BaseModel):
    """Requested IP rotation settings for the provisioned connection."""

    ip_change_enabled: bool = False
    interval_minutes: int = Field(default=0, ge=0)

    @property
    def enabled(self) -> bool:
        return self.ip_change_enabled and self.interval_minutes > 0

    @property
    def mode(self) -> RotationMode:
        return RotationMode.SCHEDULED if self.enabled else RotationMode.NONE


class TrialMetadata(BaseModel):
    kind: Literal["trial"] = "trial"
    rotation: RotationConfig = Field(default_factory=RotationConfig)


class PendingPaymentMetadata(BaseModel):
    kind: Literal["pending_payment"] = "pending_payment"
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    payment_provider: Optional[str] = None


class ManualProvisioningMetadata(BaseModel):
    """Order is parked until an operator intervenes."""

    kind: Literal["manual_provisioning"] = "manual_provisioning"
    manual_provisioning_required: bool = True
    pending_reason: str
    connection_id: Optional[str] = None
    rotation: RotationConfig = Field(default_factory=RotationConfig)


class ProvisionedMetadata(BaseModel):
    kind: Literal["provisioned"] = "provisioned"
    manual_provisioning_required: bool = False
    connection_id: str
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    proxy_ids: List[str] = Field(default_factory=list)
    country: Optional[str] = None
    manually_activated_by: Optional[str] = None
    manually_activated_at: Optional[datetime] = None


OrderMetadata = Annotated[
    Union[TrialMetadata, PendingPaymentMetadata, ManualProvisioningMetadata, ProvisionedMetadata],
    Field(discriminator="kind"),
]


class Order(BaseModel):
    """Customer order for a number of proxy connections."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Order identifier")
    user_id: str = Field(..., description="Customer identifier")
    plan_id: str = Field(..., description="Plan identifier")
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    quantity: int = Field(default=1, gt=0)
    total_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "usd"
    reference: Optional[str] = Field(
        default=None, description="Payment reference of the form payment-{ts}-{user_id}"
    )
    duration_days: int = Field(default=30, gt=0)
    auto_renew: bool = Field(default=False, description="Renew from the wallet when the term ends")
    start_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    metadata: OrderMetadata = Field(default_factory=PendingPaymentMetadata)

    @property
    def is_trial(self) -> bool:
        return self.total_amount == 0

    @property
    def rotation(self) -> RotationConfig:
        return self.metadata.rotation


class Plan(BaseModel):
    id: str
    name: str
    price_usd_month: Decimal = Field(..., ge=0)
    duration_days: int = Field(default=30, gt=0)
    is_active: bool = True
