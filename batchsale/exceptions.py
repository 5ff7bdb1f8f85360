"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from enum import Enum


class SaleError(Exception):
    """Base exception for all sale pipeline errors."""

    pass


class IssuanceErrorKind(str, Enum):
    """Why an invoice could not be issued."""

    INVALID_REQUEST = "invalid_request"
    PROCESSOR_UNAVAILABLE = "processor_unavailable"
    PERSISTENCE_FAILED = "persistence_failed"


class IssuanceError(SaleError):
    """Raised when a purchase request does not produce an invoice."""

    def __init__(self, kind: IssuanceErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry with the same idempotency key."""
        return self.kind in (IssuanceErrorKind.PROCESSOR_UNAVAILABLE, IssuanceErrorKind.PERSISTENCE_FAILED)


class InvalidRequestError(IssuanceError):
    """Raised when a purchase request fails validation. Never retried."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(IssuanceErrorKind.INVALID_REQUEST, message)


class IdempotencyConflictError(InvalidRequestError):
    """Raised when idempotency key reused with different purchase parameters."""

    def __init__(self, existing_id: str) -> None:
        self.existing_id = existing_id
        super().__init__(
            f"Idempotency conflict: key already used by invoice {existing_id}",
            field="idempotency_key",
        )


class ProcessorUnavailableError(IssuanceError):
    """Raised when the payment processor could not mint a payment request."""

    def __init__(self, message: str) -> None:
        super().__init__(IssuanceErrorKind.PROCESSOR_UNAVAILABLE, f"Payment processor unavailable: {message}")


class InvoicePersistError(IssuanceError):
    """Raised when a minted invoice could not be stored. The processor invoice is left unreferenced."""

    def __init__(self, invoice_id: str, processor_invoice_id: str) -> None:
        self.invoice_id = invoice_id
        self.processor_invoice_id = processor_invoice_id
        super().__init__(
            IssuanceErrorKind.PERSISTENCE_FAILED,
            f"Invoice {invoice_id} could not be saved; retry with the same idempotency key",
        )


class InvoiceExpiredError(SaleError):
    """Raised when an operation targets an invoice that expired unpaid."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} has expired; start a new purchase")


class InvoiceNotFoundError(SaleError):
    """Raised when invoice doesn't exist."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidTransitionError(SaleError):
    """Raised when an invoice state transition is not allowed."""

    def __init__(self, invoice_id: str, current: str, requested: str) -> None:
        self.invoice_id = invoice_id
        self.current = current
        self.requested = requested
        super().__init__(f"Invoice {invoice_id}: cannot transition {current} -> {requested}")


class SupplyExhaustedError(SaleError):
    """Raised by the ledger store when a settlement would exceed total supply."""

    def __init__(self, requested: int, remaining: int) -> None:
        self.requested = requested
        self.remaining = remaining
        super().__init__(f"Supply exhausted. Remaining: {remaining}, Requested: {requested}")


class DuplicateSettlementError(SaleError):
    """Raised by the ledger store when an invoice already has a settlement row."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} is already settled")


class LedgerInvariantError(SaleError):
    """Raised when the distribution ledger conservation invariant is violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Ledger invariant violated: {message}")


class WriteVerificationError(SaleError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class PaymentProcessorError(SaleError):
    """Raised when payment processor operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment processor error: {message}")


class WebhookVerificationError(SaleError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class TransferEngineError(SaleError):
    """Raised when the RGB transfer engine cannot produce a consignment."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Transfer engine error: {message}")


class ConsignmentNotReadyError(SaleError):
    """Raised when a consignment is requested before it has been delivered."""

    def __init__(self, invoice_id: str, status: str) -> None:
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(f"Consignment not yet available for invoice {invoice_id} (status: {status})")


class RequestSupersededError(SaleError):
    """Raised when an in-flight status request is cancelled by a newer tick or a webhook."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"In-flight request superseded: {operation}")
