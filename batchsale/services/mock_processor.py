"""
Mock Payment Processor - In-memory processor for development and tests.

Invoices are paid by calling mark_paid(); webhooks are signed with the same
HMAC scheme the real processor uses so the full verification path runs.
"""

import json
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from batchsale.exceptions import PaymentProcessorError, WebhookVerificationError
from batchsale.services.payment_processor import (
    PAYMENT_CONFIRMED_EVENT,
    ProcessorInvoice,
    ProcessorInvoiceStatus,
    WebhookEvent,
    sign_payload,
    signature_matches,
)

logger = get_logger(__name__)


@dataclass
class _MockInvoice:
    amount_sats: int
    order_id: str
    paid_amount_sats: int = 0


class MockProcessor:
    """In-memory PaymentProcessor."""

    def __init__(self, webhook_secret: str = "mock-webhook-secret", expiry_minutes: int = 15) -> None:
        self.webhook_secret = webhook_secret
        self.expiry_minutes = expiry_minutes
        self._invoices: dict[str, _MockInvoice] = {}
        self._failures_pending = 0
        self.create_calls = 0
        self.status_calls = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` processor calls raise PaymentProcessorError."""
        self._failures_pending += count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise PaymentProcessorError(f"mock {operation} failure")

    async def create_invoice(
        self, amount_sats: int, order_id: str, description: str
    ) -> ProcessorInvoice:
        self.create_calls += 1
        self._maybe_fail("create_invoice")

        processor_invoice_id = f"mock_{secrets.token_hex(8)}"
        self._invoices[processor_invoice_id] = _MockInvoice(amount_sats, order_id)
        logger.info(
            "mock_invoice_created",
            processor_invoice_id=processor_invoice_id,
            amount_sats=amount_sats,
        )
        return ProcessorInvoice(
            processor_invoice_id=processor_invoice_id,
            payment_request=f"lnbcrt{amount_sats}n1mock{secrets.token_hex(16)}",
            expires_at=datetime.now(UTC) + timedelta(minutes=self.expiry_minutes),
        )

    async def get_invoice_status(self, processor_invoice_id: str) -> ProcessorInvoiceStatus:
        self.status_calls += 1
        self._maybe_fail("get_invoice_status")

        invoice = self._invoices.get(processor_invoice_id)
        if invoice is None:
            raise PaymentProcessorError(f"unknown mock invoice {processor_invoice_id}")

        paid = invoice.paid_amount_sats > 0
        return ProcessorInvoiceStatus(
            processor_invoice_id=processor_invoice_id,
            paid=paid,
            paid_amount_sats=invoice.paid_amount_sats,
            status="Settled" if paid else "New",
        )

    def mark_paid(self, processor_invoice_id: str, amount_sats: int | None = None) -> tuple[bytes, str]:
        """
        Simulate the buyer paying.

        Returns a signed InvoiceSettled webhook (body, signature) the caller
        may deliver to the webhook endpoint.
        """
        invoice = self._invoices.get(processor_invoice_id)
        if invoice is None:
            raise PaymentProcessorError(f"unknown mock invoice {processor_invoice_id}")
        invoice.paid_amount_sats = invoice.amount_sats if amount_sats is None else amount_sats
        return self.build_webhook(processor_invoice_id, PAYMENT_CONFIRMED_EVENT)

    def build_webhook(self, processor_invoice_id: str, event_type: str) -> tuple[bytes, str]:
        body = json.dumps(
            {
                "deliveryId": secrets.token_hex(8),
                "type": event_type,
                "invoiceId": processor_invoice_id,
            }
        ).encode("utf-8")
        return body, sign_payload(body, self.webhook_secret)

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not signature_matches(payload, signature, self.webhook_secret):
            raise WebhookVerificationError("Invalid mock webhook signature")
        try:
            body = json.loads(payload)
            return WebhookEvent(
                event_id=str(body.get("deliveryId", "")),
                event_type=str(body["type"]),
                processor_invoice_id=str(body["invoiceId"]),
                store_id=None,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise WebhookVerificationError(f"Failed to parse mock webhook: {exc}") from exc

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
