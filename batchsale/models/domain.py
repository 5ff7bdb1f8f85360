"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import re
from dataclasses import dataclass, replace
from datetime import datetime

from batchsale.exceptions import InvalidTransitionError
from batchsale.models.api import InvoiceStatus, SettleOutcome, SnapshotHealth, Tier

RGB_INVOICE_MAX_LENGTH = 2048
IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,255}$")
_UTXO_BINDING_PATTERN = re.compile(r"utxob:([^?/\s]+)")


def is_valid_rgb_invoice(value: str) -> bool:
    """Check the RGB invoice grammar: rgb: prefix and a non-empty utxob: binding."""
    if not value or len(value) > RGB_INVOICE_MAX_LENGTH:
        return False
    if not value.startswith("rgb:"):
        return False
    if any(ch.isspace() for ch in value):
        return False
    return _UTXO_BINDING_PATTERN.search(value) is not None


def blinded_utxo(rgb_invoice: str) -> str:
    """Blinded UTXO the tokens are sent to. Raises ValueError if there is none."""
    match = _UTXO_BINDING_PATTERN.search(rgb_invoice)
    if match is None:
        raise ValueError("RGB invoice has no utxob: binding")
    return match.group(1)


def is_valid_idempotency_key(value: str) -> bool:
    return IDEMPOTENCY_KEY_PATTERN.match(value) is not None


@dataclass(frozen=True)
class TierResolution:
    """Outcome of resolving a game score. tier is None when the score is ungated."""

    score: int
    tier: Tier | None

    @property
    def is_eligible(self) -> bool:
        return self.tier is not None

    @property
    def max_batches(self) -> int:
        return self.tier.max_batches if self.tier is not None else 0


@dataclass(frozen=True)
class GameSession:
    """Server-side record of a finished game that unlocked a tier."""

    id: str
    score: int
    tier: Tier
    completed_at: datetime
    valid_until: datetime

    def is_valid_at(self, now: datetime) -> bool:
        return now <= self.valid_until


@dataclass(frozen=True)
class PurchaseRequest:
    """
    Buyer's request to purchase batches.

    Only structural types are checked here; business validation (grammar,
    tier limits, idempotency) is the issuer's job so it can fail with typed
    errors in a fixed order.
    """

    rgb_invoice: str
    batch_count: int
    tier: Tier | None
    idempotency_key: str
    game_score: int | None = None
    game_session_id: str | None = None


@dataclass(frozen=True)
class Invoice:
    """
    Immutable invoice snapshot.

    Every status change goes through transition(), which returns a new
    snapshot and rejects moves the state machine does not allow.
    """

    id: str
    idempotency_key: str
    rgb_invoice: str
    tier: Tier
    batch_count: int
    amount_sats: int
    token_amount: int
    processor_invoice_id: str
    payment_request: str
    created_at: datetime
    expires_at: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_at: datetime | None = None
    settled_at: datetime | None = None
    transfer_artifact: str | None = None
    delivered_at: datetime | None = None
    failure_reason: str | None = None
    archived_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate invoice invariants."""
        if self.batch_count < 1:
            raise ValueError(f"batch_count must be positive: {self.batch_count}")
        if self.amount_sats <= 0:
            raise ValueError(f"amount_sats must be positive: {self.amount_sats}")
        if self.token_amount <= 0:
            raise ValueError(f"token_amount must be positive: {self.token_amount}")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def awaiting_delivery(self) -> bool:
        """Settled on the ledger but the consignment has not been attached yet."""
        return self.status == InvoiceStatus.SETTLED and self.transfer_artifact is None

    def is_expired_at(self, now: datetime) -> bool:
        return now > self.expires_at

    def same_purchase(self, request: PurchaseRequest) -> bool:
        """Whether a request carries the same purchase parameters as this invoice."""
        return (
            self.rgb_invoice == request.rgb_invoice
            and self.batch_count == request.batch_count
            and self.tier == request.tier
        )

    def transition(self, target: InvoiceStatus, now: datetime, reason: str | None = None) -> "Invoice":
        """Move to target status, stamping the matching timestamp."""
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)

        if target == InvoiceStatus.PAID:
            return replace(self, status=target, paid_at=now)
        if target == InvoiceStatus.SETTLED:
            return replace(self, status=target, settled_at=now)
        if target == InvoiceStatus.SETTLEMENT_FAILED:
            return replace(self, status=target, failure_reason=reason)
        return replace(self, status=target)

    def with_artifact(self, artifact: str, now: datetime) -> "Invoice":
        """Attach the delivered consignment. Only valid once settled."""
        if self.status != InvoiceStatus.SETTLED:
            raise InvalidTransitionError(self.id, self.status.value, "delivered")
        return replace(self, transfer_artifact=artifact, delivered_at=now)


@dataclass(frozen=True)
class SettleResult:
    """Outcome of DistributionLedger.settle."""

    outcome: SettleOutcome
    invoice_id: str
    token_amount: int
    total_distributed: int
    remaining: int

    @property
    def succeeded(self) -> bool:
        """SETTLED and DUPLICATE both mean the invoice holds its allocation."""
        return self.outcome in (SettleOutcome.SETTLED, SettleOutcome.DUPLICATE)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Persisted ledger state as loaded from the store."""

    total_supply: int
    total_distributed: int
    settlements: tuple[tuple[str, int], ...]

    def __post_init__(self) -> None:
        if self.total_supply <= 0:
            raise ValueError(f"total_supply must be positive: {self.total_supply}")
        if self.total_distributed < 0:
            raise ValueError(f"total_distributed cannot be negative: {self.total_distributed}")


@dataclass(frozen=True)
class LedgerStats:
    """Read-only view of sale progress."""

    total_supply: int
    total_distributed: int
    remaining: int
    remaining_batches: int
    tokens_per_batch: int
    price_per_batch_sats: int
    percent_sold: float


@dataclass(frozen=True)
class StatsSnapshot:
    """What the stats poller hands to the UI on every tick."""

    health: SnapshotHealth
    stats: LedgerStats | None
    fetched_at: datetime | None
    age_seconds: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class InvoiceStatusView:
    """Invoice status as presented to the buyer."""

    invoice: Invoice
    message: str

    @property
    def status(self) -> InvoiceStatus:
        return self.invoice.status

    @property
    def is_terminal(self) -> bool:
        return self.invoice.is_terminal

    @property
    def requires_operator_action(self) -> bool:
        return self.invoice.status == InvoiceStatus.SETTLEMENT_FAILED

    @property
    def consignment_ready(self) -> bool:
        return self.invoice.transfer_artifact is not None
