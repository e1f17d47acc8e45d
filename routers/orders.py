"""Customer checkout and reservation endpoints."""

from fastapi import APIRouter, Depends, status

from models import (
    AutoRenewRequest,
    AutoRenewResponse,
    CheckoutRequest,
    CheckoutResponse,
    ReservationStatus,
    TrialRequest,
)
from services import CheckoutService
from .dependencies import get_checkout_service, get_user_id

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/checkout/crypto", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout_crypto(
    body: CheckoutRequest,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Reserve capacity and open a crypto invoice for the order."""
    return await checkout.create_crypto_invoice(
        user_id, body.plan_id, quantity=body.quantity, rotation=body.rotation, auto_renew=body.auto_renew
    )


@router.post("/checkout/wallet", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout_wallet(
    body: CheckoutRequest,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    return await checkout.pay_with_wallet(
        user_id, body.plan_id, quantity=body.quantity, rotation=body.rotation, auto_renew=body.auto_renew
    )


@router.post("/trial", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def start_trial(
    body: TrialRequest,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    return await checkout.start_free_trial(user_id, body.plan_id)


@router.get("/{order_id}/reservation", response_model=ReservationStatus)
async def reservation_status(
    order_id: str,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> ReservationStatus:
    return await checkout.get_reservation_status(order_id, user_id)


@router.delete("/{order_id}/reservation", response_model=ReservationStatus)
async def cancel_reservation(
    order_id: str,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> ReservationStatus:
    """Abandon a pending checkout and give the held capacity back."""
    return await checkout.cancel_reservation(order_id, user_id)


@router.patch("/{order_id}/auto-renew", response_model=AutoRenewResponse)
async def update_auto_renew(
    order_id: str,
    body: AutoRenewRequest,
    user_id: str = Depends(get_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> AutoRenewResponse:
    return await checkout.set_auto_renew(order_id, user_id, body.auto_renew)
