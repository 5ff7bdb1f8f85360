"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Purchase tier unlocked by game score."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"

    @property
    def min_score(self) -> int:
        """Lowest game score that unlocks this tier."""
        return _TIER_RULES[self][0]

    @property
    def max_batches(self) -> int:
        """Most batches purchasable on a single invoice at this tier."""
        return _TIER_RULES[self][1]


# Canonical tier table: (min_score, max_batches)
_TIER_RULES: dict[Tier, tuple[int, int]] = {
    Tier.BRONZE: (11, 5),
    Tier.SILVER: (18, 8),
    Tier.GOLD: (28, 10),
}


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    PENDING = "pending"
    PAID = "paid"
    SETTLING = "settling"
    SETTLED = "settled"
    EXPIRED = "expired"
    SETTLEMENT_FAILED = "settlement_failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states never transition again."""
        return self in (
            InvoiceStatus.SETTLED,
            InvoiceStatus.EXPIRED,
            InvoiceStatus.SETTLEMENT_FAILED,
        )

    def can_transition_to(self, target: "InvoiceStatus") -> bool:
        """Whether the state machine allows moving from this status to target."""
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.EXPIRED}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.SETTLING, InvoiceStatus.SETTLEMENT_FAILED}),
    InvoiceStatus.SETTLING: frozenset({InvoiceStatus.SETTLED, InvoiceStatus.SETTLEMENT_FAILED}),
    InvoiceStatus.SETTLED: frozenset(),
    InvoiceStatus.EXPIRED: frozenset(),
    InvoiceStatus.SETTLEMENT_FAILED: frozenset(),
}


class SettleOutcome(str, Enum):
    """Result of a ledger settlement attempt."""

    SETTLED = "settled"
    DUPLICATE = "duplicate"
    SUPPLY_EXHAUSTED = "supply_exhausted"


class SnapshotHealth(str, Enum):
    """Quality of a stats snapshot served to the UI."""

    OK = "ok"
    CACHED = "cached"
    DEGRADED = "degraded"
    PAUSED = "paused"


# ============================================================================
# Game Score Models
# ============================================================================


class GameScoreRequest(BaseModel):
    """POST /v1/game/score request body."""

    score: int = Field(..., ge=0, description="Score of a completed game session")


class GameScoreResponse(BaseModel):
    """POST /v1/game/score response."""

    score: int
    tier: Tier | None
    max_batches: int
    eligible: bool
    message: str
    session_id: str | None = None
    valid_until: str | None = None


# ============================================================================
# Purchase Models
# ============================================================================


class PurchaseRequestBody(BaseModel):
    """POST /v1/purchases request body."""

    rgb_invoice: str = Field(..., description="Recipient RGB invoice (rgb:...utxob:...)")
    batch_count: int = Field(..., description="Number of batches to purchase")
    game_session_id: str = Field(..., description="Session id returned by /v1/game/score")
    tier: Tier | None = Field(None, description="Expected tier; must match the game session")
    idempotency_key: str = Field(..., description="Client-generated random key per purchase attempt")
    game_score: int | None = Field(None, ge=0, description="Expected score; must match the game session")


class InvoiceResponse(BaseModel):
    """Invoice as returned to the UI."""

    invoice_id: str
    payment_request: str
    amount_sats: int
    batch_count: int
    token_amount: int
    tier: Tier
    status: InvoiceStatus
    created_at: str
    expires_at: str


class InvoiceStatusResponse(BaseModel):
    """GET /v1/invoices/{invoice_id} response."""

    invoice_id: str
    status: InvoiceStatus
    is_terminal: bool
    requires_operator_action: bool
    consignment_ready: bool
    amount_sats: int
    token_amount: int
    expires_at: str
    paid_at: str | None = None
    settled_at: str | None = None
    message: str


# ============================================================================
# Ledger Models
# ============================================================================


class LedgerStatsResponse(BaseModel):
    """GET /v1/ledger/stats response."""

    total_supply: int
    total_distributed: int
    remaining: int
    remaining_batches: int
    tokens_per_batch: int
    price_per_batch_sats: int
    percent_sold: float


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment processor."""

    received: bool = True
    event_type: str
    handled: bool


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    version: str
    active_invoices: int
