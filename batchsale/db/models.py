"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Column types are kept portable: PostgreSQL in production, SQLite (aiosqlite)
for development and tests.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class InvoiceRecord(Base):
    """
    ORM model for invoices table.

    One row per purchase attempt. The idempotency key and the processor's
    invoice id are both unique so a replayed request or a webhook resolves to
    exactly one row.
    """

    __tablename__ = "invoices"

    # Primary Key
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Request identity
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    rgb_invoice: Mapped[str] = mapped_column(String(2048), nullable=False)
    tier: Mapped[str] = mapped_column(String(10), nullable=False)

    # Purchase amounts (immutable after insert)
    batch_count: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Payment processor
    processor_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_request: Mapped[str] = mapped_column(Text, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Delivery (base64 consignment)
    transfer_artifact: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retention
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("batch_count > 0", name="ck_invoice_batch_count_positive"),
        CheckConstraint("amount_sats > 0", name="ck_invoice_amount_positive"),
        CheckConstraint("token_amount > 0", name="ck_invoice_token_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'settling', 'settled', 'expired', 'settlement_failed')",
            name="ck_invoice_status",
        ),
        CheckConstraint("tier IN ('bronze', 'silver', 'gold')", name="ck_invoice_tier"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_created_at", "created_at"),
    )


class LedgerState(Base):
    """
    ORM model for ledger_state table.

    Single row holding the running distribution total. Updated only in the
    same transaction as a settlements insert.
    """

    __tablename__ = "ledger_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    total_supply: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_distributed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_ledger_single_row"),
        CheckConstraint("total_distributed >= 0", name="ck_ledger_distributed_non_negative"),
        CheckConstraint(
            "total_distributed <= total_supply", name="ck_ledger_distributed_within_supply"
        ),
    )


class Settlement(Base):
    """
    ORM model for settlements table.

    Primary key on invoice_id makes settlement exactly-once at the storage level.
    """

    __tablename__ = "settlements"

    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invoices.id", ondelete="RESTRICT"), primary_key=True
    )
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("token_amount > 0", name="ck_settlement_token_amount_positive"),
    )


class GameSessionRecord(Base):
    """
    ORM model for game_sessions table.

    One row per finished game that unlocked a tier. Purchases look the row up
    by id; the tier is never taken from the buyer.
    """

    __tablename__ = "game_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    tier: Mapped[str] = mapped_column(String(10), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("score >= 0", name="ck_game_session_score_non_negative"),
        CheckConstraint("tier IN ('bronze', 'silver', 'gold')", name="ck_game_session_tier"),
        Index("idx_game_sessions_valid_until", "valid_until"),
    )
