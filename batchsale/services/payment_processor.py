"""
Payment Processor Protocol - Processor-agnostic Lightning invoicing interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

# Only this event type confirms payment; everything else is acknowledged and ignored
PAYMENT_CONFIRMED_EVENT = "InvoiceSettled"

SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class ProcessorInvoice:
    """
    Lightning invoice minted by the processor.

    payment_request is the BOLT11 string the buyer's wallet pays.
    """

    processor_invoice_id: str
    payment_request: str
    expires_at: datetime | None


@dataclass(frozen=True)
class ProcessorInvoiceStatus:
    """Processor view of an invoice at poll time."""

    processor_invoice_id: str
    paid: bool
    paid_amount_sats: int
    status: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Verified webhook notification from the processor.

    Represents a single invoice event; only payment confirmations move an
    invoice forward.
    """

    event_id: str
    event_type: str
    processor_invoice_id: str
    store_id: str | None

    @property
    def is_payment_confirmation(self) -> bool:
        return self.event_type == PAYMENT_CONFIRMED_EVENT


def sign_payload(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 signature in the `sha256=<hex>` header form."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def signature_matches(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time comparison of a received signature header."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip())


class PaymentProcessor(Protocol):
    """
    Payment processor protocol.

    Any Lightning processor (BTCPay Server, a mock, ...) must implement this
    interface so the pipeline stays processor-agnostic.
    """

    async def create_invoice(
        self, amount_sats: int, order_id: str, description: str
    ) -> ProcessorInvoice:
        """
        Mint a Lightning invoice.

        Args:
            amount_sats: Exact amount to charge
            order_id: Our invoice id, echoed back in processor metadata
            description: Human readable memo

        Raises:
            PaymentProcessorError: If the processor cannot mint the invoice
        """
        ...

    async def get_invoice_status(self, processor_invoice_id: str) -> ProcessorInvoiceStatus:
        """
        Fetch the current payment status.

        Raises:
            PaymentProcessorError: If the status cannot be fetched
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook notification.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        ...

    async def ping(self) -> None:
        """
        Check the processor is reachable with our credentials.

        Raises:
            PaymentProcessorError: If the processor cannot be reached
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
