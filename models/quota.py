"""Quota management models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import ReservationState


class QuotaReservation(BaseModel):
    """A time-boxed hold against the available-connections counter."""

    model_config = ConfigDict(use_enum_values=True)

    reservation_id: str = Field(..., description="Unique reservation identifier")
    order_id: str = Field(..., description="Order holding the quota, one live hold per order")
    user_id: str = Field(..., description="Customer identifier")
    connections_held: int = Field(..., gt=0, description="Number of connections held")
    state: ReservationState = Field(..., description="pending, confirmed or released")
    created_at: datetime
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    returned_at: Optional[datetime] = Field(
        default=None, description="When a confirmed hold was credited back after order end"
    )


class AvailabilityResult(BaseModel):
    ok: bool
    available: int = Field(..., ge=0)


class ReservationResult(BaseModel):
    """Result of a successful reserve call."""

    reservation_id: str
    order_id: str
    expires_at: datetime
    expires_in_seconds: int = Field(..., ge=0)
    reserved_connections: int = Field(..., gt=0)
    remaining_quota: int = Field(..., ge=0)
    existing: bool = Field(default=False, description="True when an existing live hold was returned")


class DeductResult(BaseModel):
    order_id: str
    deducted_connections: int = Field(..., gt=0)
    remaining_quota: int = Field(..., ge=0)


class QuotaStatus(BaseModel):
    available: int = Field(..., ge=0)
    pending_reservations: int = Field(..., ge=0)
    reserved_connections: int = Field(..., ge=0)


class ReservationStatus(BaseModel):
    """Reservation view exposed to the checkout page."""

    model_config = ConfigDict(use_enum_values=True)

    order_id: str
    has_reservation: bool
    state: Optional[ReservationState] = None
    reserved_connections: int = 0
    expires_at: Optional[datetime] = None
    expires_in_seconds: int = 0
    is_expired: bool = False
