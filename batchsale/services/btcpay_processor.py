"""
BTCPay Server Payment Processor - Greenfield API over httpx.

NO DICTIONARIES - All results are returned as typed dataclasses.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from structlog import get_logger

from batchsale.exceptions import PaymentProcessorError, WebhookVerificationError
from batchsale.services.payment_processor import (
    ProcessorInvoice,
    ProcessorInvoiceStatus,
    WebhookEvent,
    signature_matches,
)

logger = get_logger(__name__)

LIGHTNING_METHOD_IDS = ("BTC-LN", "BTC-LightningNetwork")
PAID_STATUSES = ("Settled", "Complete")


class BTCPayProcessor:
    """
    BTCPay Server processor implementation.

    Implements the PaymentProcessor protocol against the Greenfield API.
    Invoices are priced in SATS and restricted to Lightning.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        store_id: str,
        webhook_secret: str,
        expiry_minutes: int = 15,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize BTCPay processor.

        Args:
            base_url: BTCPay Server root URL
            api_key: Greenfield API key with invoice permissions
            store_id: Store the invoices are created in
            webhook_secret: Secret configured on the store webhook
            expiry_minutes: Invoice expiration passed to checkout settings
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (tests)
        """
        self.store_id = store_id
        self.webhook_secret = webhook_secret
        self.expiry_minutes = expiry_minutes
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"token {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    def _invoices_path(self) -> str:
        return f"/api/v1/stores/{self.store_id}/invoices"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 401:
                raise PaymentProcessorError("BTCPay authentication failed (check API key)") from exc
            if status == 404:
                raise PaymentProcessorError(f"BTCPay resource not found: {path}") from exc
            raise PaymentProcessorError(f"BTCPay returned HTTP {status}") from exc
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"BTCPay request failed: {exc}") from exc
        except ValueError as exc:
            raise PaymentProcessorError("BTCPay returned a non-JSON response") from exc

    async def create_invoice(
        self, amount_sats: int, order_id: str, description: str
    ) -> ProcessorInvoice:
        """
        Create an invoice and resolve its BOLT11 payment request.

        Raises:
            PaymentProcessorError: If either Greenfield call fails or no
                Lightning payment method is offered
        """
        logger.info("creating_btcpay_invoice", amount_sats=amount_sats, order_id=order_id)

        invoice = await self._request(
            "POST",
            self._invoices_path(),
            json={
                "amount": str(amount_sats),
                "currency": "SATS",
                "metadata": {"orderId": order_id, "itemDesc": description},
                "checkout": {
                    "paymentMethods": list(LIGHTNING_METHOD_IDS),
                    "defaultPaymentMethod": LIGHTNING_METHOD_IDS[1],
                    "expirationMinutes": self.expiry_minutes,
                    "paymentTolerance": 0,
                },
            },
        )
        processor_invoice_id = invoice.get("id")
        if not processor_invoice_id:
            raise PaymentProcessorError("BTCPay invoice response missing id")

        methods = await self._request(
            "GET", f"{self._invoices_path()}/{processor_invoice_id}/payment-methods"
        )
        lightning = next(
            (m for m in methods if m.get("paymentMethodId") in LIGHTNING_METHOD_IDS),
            None,
        )
        if lightning is None or not lightning.get("destination"):
            raise PaymentProcessorError(
                f"BTCPay invoice {processor_invoice_id} has no Lightning payment method"
            )

        expires_at = None
        if invoice.get("expirationTime"):
            expires_at = datetime.fromtimestamp(int(invoice["expirationTime"]), tz=UTC)

        logger.info(
            "btcpay_invoice_created",
            processor_invoice_id=processor_invoice_id,
            order_id=order_id,
        )
        return ProcessorInvoice(
            processor_invoice_id=processor_invoice_id,
            payment_request=lightning["destination"],
            expires_at=expires_at,
        )

    async def get_invoice_status(self, processor_invoice_id: str) -> ProcessorInvoiceStatus:
        """Fetch invoice status; Settled and Complete count as paid."""
        invoice = await self._request("GET", f"{self._invoices_path()}/{processor_invoice_id}")
        status = str(invoice.get("status", "Unknown"))
        paid = status in PAID_STATUSES

        paid_amount_sats = 0
        if paid:
            try:
                paid_amount_sats = int(Decimal(str(invoice.get("amount", "0"))))
            except InvalidOperation as exc:
                raise PaymentProcessorError(
                    f"BTCPay invoice {processor_invoice_id} has an unparseable amount"
                ) from exc

        return ProcessorInvoiceStatus(
            processor_invoice_id=processor_invoice_id,
            paid=paid,
            paid_amount_sats=paid_amount_sats,
            status=status,
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify the BTCPay-Sig header and parse the event.

        Raises:
            WebhookVerificationError: Bad signature, foreign store or malformed body
        """
        logger.info("verifying_btcpay_webhook", signature_present=bool(signature))

        if not signature_matches(payload, signature, self.webhook_secret):
            logger.error("btcpay_webhook_signature_invalid")
            raise WebhookVerificationError("Invalid BTCPay webhook signature")

        try:
            body = json.loads(payload)
            event = WebhookEvent(
                event_id=str(body.get("deliveryId") or body.get("webhookId") or ""),
                event_type=str(body["type"]),
                processor_invoice_id=str(body["invoiceId"]),
                store_id=body.get("storeId"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("btcpay_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse BTCPay webhook: {exc}") from exc

        if event.store_id is not None and event.store_id != self.store_id:
            raise WebhookVerificationError("Webhook store ID mismatch")

        logger.info(
            "btcpay_webhook_verified",
            event_type=event.event_type,
            processor_invoice_id=event.processor_invoice_id,
        )
        return event

    async def ping(self) -> None:
        """Check that the store is reachable with our credentials."""
        await self._request("GET", f"/api/v1/stores/{self.store_id}")

    async def close(self) -> None:
        await self._client.aclose()
