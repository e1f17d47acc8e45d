"""Client for the NOWPayments invoice API."""

from concurrent.futures import Executor
from decimal import Decimal
from typing import Dict, Optional

from config import ApplicationConfig
from models import Invoice
from utils.errors import ProviderError
from .provider_client import ProviderApiClient


class NowPaymentsClient(ProviderApiClient):
    provider_name = "nowpayments"

    def __init__(self, config: ApplicationConfig, executor: Optional[Executor] = None) -> None:
        super().__init__(
            base_url=config.nowpayments_api_url,
            timeout=config.nowpayments_timeout,
            user_agent=f"Proxy-Fulfillment/{config.app_version}",
            executor=executor,
        )
        self.api_key = config.nowpayments_api_key

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key}

    async def create_invoice(
        self,
        price_amount: Decimal,
        price_currency: str,
        pay_currency: str,
        order_reference: str,
        description: str,
        ipn_callback_url: str,
        success_url: str,
        cancel_url: str,
    ) -> Invoice:
        body = {
            "price_amount": float(price_amount),
            "price_currency": price_currency,
            "pay_currency": pay_currency,
            "order_id": order_reference,
            "order_description": description,
            "ipn_callback_url": ipn_callback_url,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        payload = await self._make_async_request("POST", "/invoice", data=body, retry=False)
        if not payload or "id" not in payload or "invoice_url" not in payload:
            raise ProviderError("Invoice response is missing id or invoice_url", provider=self.provider_name)

        self.logger.info(
            "Invoice created",
            serviceName="NowPaymentsClient",
            operationName="create_invoice",
            invoice_id=payload["id"],
            order_reference=order_reference,
        )
        return Invoice(
            id=str(payload["id"]),
            invoice_url=payload["invoice_url"],
            order_reference=payload.get("order_id") or order_reference,
        )
