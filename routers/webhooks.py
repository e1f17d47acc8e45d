"""Payment provider webhook endpoint."""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from models import WebhookAck
from services import PaymentReconciler
from utils import get_logger, log_exception
from .dependencies import get_reconciler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/nowpayments", response_model=WebhookAck)
async def nowpayments_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Receive a NOWPayments IPN.

    Every parseable delivery is acknowledged with 200 and a status body so the
    provider stops retrying; processing failures are kept in the event log for
    replay. A 503 is returned only when the event could not be recorded at all.
    """
    raw_body = await request.body()
    client_ip = request.client.host if request.client else None
    try:
        return await reconciler.handle_webhook(raw_body, request.headers, client_ip)
    except Exception as e:
        log_exception(logger, e, "Webhook could not be recorded", client_ip=client_ip)
        ack = WebhookAck(status="error", message="Temporarily unable to record event")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=ack.model_dump())
