"""Payment, webhook and invoice models."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .enums import OrderStatus, PaymentStatus


class StatusMapping(BaseModel):
    """Internal triple a provider status maps onto."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    payment_status: PaymentStatus
    order_status: OrderStatus
    is_final: bool


class OrderReference(BaseModel):
    raw: str
    timestamp: int
    user_id: str


class Payment(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    provider: str
    reference: str = Field(..., description="Provider order reference")
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    is_final: bool = False
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    invoice_uuid: Optional[str] = None
    invoice_url: Optional[str] = None
    txid: Optional[str] = None
    payer_currency: Optional[str] = None
    signature_ok: Optional[bool] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class WebhookEvent(BaseModel):
    """Durable log entry for an inbound provider event."""

    id: str
    provider: str
    event_type: str
    signature_ok: bool
    ip_allowed: bool
    client_ip: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime
    processed_at: Optional[datetime] = None
    processing_error: Optional[str] = None
    retry_count: int = 0


class WebhookAck(BaseModel):
    status: Literal["success", "error"]
    message: Optional[str] = None


class NowPaymentsIpn(BaseModel):
    """Instant payment notification body. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    payment_id: Optional[Union[int, str]] = None
    invoice_id: Optional[Union[int, str]] = None
    payment_status: str
    order_id: Optional[str] = None
    price_amount: Optional[Decimal] = None
    price_currency: Optional[str] = None
    pay_currency: Optional[str] = None
    actually_paid: Optional[Decimal] = None


class Invoice(BaseModel):
    id: str
    invoice_url: str
    order_reference: str
