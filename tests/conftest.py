"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- In-memory invoice, game session and ledger stores
- Invoice and purchase request factories
- Mock payment processor and transfer engine
- SQLite-backed repository for persistence tests
- Fast polling settings and FastAPI app/client
"""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing batchsale modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./batchsale-test.db")
os.environ.setdefault("PAYMENT_PROCESSOR", "mock")
os.environ.setdefault("TRANSFER_ENGINE", "mock")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("METRICS_ENABLED", "true")

from batchsale.config import Settings
from batchsale.db.models import Base
from batchsale.db.repository import SaleRepository
from batchsale.exceptions import (
    DuplicateSettlementError,
    InvoiceNotFoundError,
    SupplyExhaustedError,
)
from batchsale.models.api import Tier
from batchsale.models.domain import GameSession, Invoice, LedgerSnapshot, PurchaseRequest
from batchsale.services.ledger import DistributionLedger
from batchsale.services.mock_processor import MockProcessor
from batchsale.services.polling import BackoffPolicy
from batchsale.services.transfer_engine import MockTransferEngine

VALID_RGB_INVOICE = "rgb:~/~/~/bc:utxob:2qBFPuKj-YZwHjSN-xJ5V8UcY-iM2eSPa3-YVXyNqEX8-DdyBa5b"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


# ============================================================================
# In-memory Stores
# ============================================================================


class FakeInvoiceStore:
    """Dict-backed stand-in for SaleRepository's invoice operations."""

    def __init__(self) -> None:
        self.invoices: dict[str, Invoice] = {}
        self.save_calls = 0
        self.fail_saves = 0

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        for existing in self.invoices.values():
            if existing.idempotency_key == invoice.idempotency_key:
                return existing
        self.invoices[invoice.id] = invoice
        return invoice

    async def save_invoice(self, invoice: Invoice) -> Invoice:
        self.save_calls += 1
        if self.fail_saves > 0:
            self.fail_saves -= 1
            raise RuntimeError("database unavailable")
        if invoice.id not in self.invoices:
            raise InvoiceNotFoundError(invoice.id)
        self.invoices[invoice.id] = invoice
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        return self.invoices.get(invoice_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Invoice | None:
        for invoice in self.invoices.values():
            if invoice.idempotency_key == idempotency_key:
                return invoice
        return None

    async def get_by_processor_id(self, processor_invoice_id: str) -> Invoice | None:
        for invoice in self.invoices.values():
            if invoice.processor_invoice_id == processor_invoice_id:
                return invoice
        return None

    async def list_active(self) -> list[Invoice]:
        return [
            i for i in self.invoices.values() if not i.is_terminal or i.awaiting_delivery
        ]


class FakeGameSessionStore:
    """Dict-backed stand-in for SaleRepository's game session operations."""

    def __init__(self) -> None:
        self.sessions: dict[str, GameSession] = {}

    async def insert_game_session(self, game_session: GameSession) -> GameSession:
        self.sessions[game_session.id] = game_session
        return game_session

    async def get_game_session(self, session_id: str) -> GameSession | None:
        return self.sessions.get(session_id)

    async def delete_game_sessions(self, valid_before: datetime) -> int:
        expired = [s.id for s in self.sessions.values() if s.valid_until < valid_before]
        for session_id in expired:
            del self.sessions[session_id]
        return len(expired)


class FakeLedgerStore:
    """Dict-backed stand-in for SaleRepository's ledger operations."""

    def __init__(self, total_supply: int, total_distributed: int = 0) -> None:
        self.total_supply = total_supply
        self.total_distributed = total_distributed
        self.settlements: dict[str, int] = {}
        self.record_calls = 0

    async def load_ledger(self, total_supply: int) -> LedgerSnapshot:
        return LedgerSnapshot(
            total_supply=self.total_supply,
            total_distributed=self.total_distributed,
            settlements=tuple(self.settlements.items()),
        )

    async def record_settlement(self, invoice_id: str, token_amount: int) -> int:
        self.record_calls += 1
        if invoice_id in self.settlements:
            raise DuplicateSettlementError(invoice_id)
        if self.total_distributed + token_amount > self.total_supply:
            raise SupplyExhaustedError(token_amount, self.total_supply - self.total_distributed)
        self.settlements[invoice_id] = token_amount
        self.total_distributed += token_amount
        return self.total_distributed


@pytest.fixture
def invoice_store() -> FakeInvoiceStore:
    return FakeInvoiceStore()


@pytest.fixture
def game_session_store() -> FakeGameSessionStore:
    return FakeGameSessionStore()


@pytest.fixture
def ledger_store() -> FakeLedgerStore:
    """Ledger store with the default sale supply (27,900 batches of 700)."""
    return FakeLedgerStore(total_supply=27_900 * 700)


@pytest.fixture
def make_ledger_store() -> Callable[..., FakeLedgerStore]:
    """Factory for ledger stores with a custom supply or starting total."""
    return FakeLedgerStore


@pytest.fixture
async def ledger(ledger_store: FakeLedgerStore) -> DistributionLedger:
    return await DistributionLedger.load(
        ledger_store,
        total_supply=ledger_store.total_supply,
        tokens_per_batch=700,
        price_per_batch_sats=2000,
    )


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def processor() -> MockProcessor:
    return MockProcessor(webhook_secret="test-webhook-secret")


@pytest.fixture
def transfer_engine() -> MockTransferEngine:
    return MockTransferEngine(contract_id="rgb:test-contract")


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    """Millisecond-scale backoff so watcher loops run quickly."""
    return BackoffPolicy(base_ms=10, max_ms=40, max_attempts=6, pause_ms=100)


class MutableClock:
    """Injectable clock tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


# ============================================================================
# Domain Model Factories
# ============================================================================


@pytest.fixture
def rgb_invoice() -> str:
    return VALID_RGB_INVOICE


@pytest.fixture
def make_invoice() -> Callable[..., Invoice]:
    """Factory for Invoice snapshots with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides: Any) -> Invoice:
        counter["n"] += 1
        n = counter["n"]
        batch_count = overrides.pop("batch_count", 1)
        created_at = overrides.pop("created_at", FIXED_NOW)
        fields: dict[str, Any] = {
            "id": f"00000000-0000-4000-8000-{n:012d}",
            "idempotency_key": f"purchase-key-{n:06d}-abcdef",
            "rgb_invoice": VALID_RGB_INVOICE,
            "tier": Tier.BRONZE,
            "batch_count": batch_count,
            "amount_sats": batch_count * 2000,
            "token_amount": batch_count * 700,
            "processor_invoice_id": f"mock_{n:016x}",
            "payment_request": f"lnbcrt{batch_count * 2000}n1test{n}",
            "created_at": created_at,
            "expires_at": created_at + timedelta(minutes=15),
        }
        fields.update(overrides)
        return Invoice(**fields)

    return _make


@pytest.fixture
def make_request() -> Callable[..., PurchaseRequest]:
    """Factory for PurchaseRequest with a valid bronze purchase by default."""

    def _make(**overrides: Any) -> PurchaseRequest:
        fields: dict[str, Any] = {
            "rgb_invoice": VALID_RGB_INVOICE,
            "batch_count": 5,
            "tier": Tier.BRONZE,
            "idempotency_key": "purchase-attempt-0001",
            "game_score": None,
        }
        fields.update(overrides)
        return PurchaseRequest(**fields)

    return _make


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sale.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(db_engine: AsyncEngine) -> SaleRepository:
    return SaleRepository(async_sessionmaker(db_engine, expire_on_commit=False))


# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with mock collaborators and fast polling."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sale.db'}",
        payment_processor="mock",
        transfer_engine="mock",
        btcpay_webhook_secret="test-webhook-secret",
        run_migrations_on_startup=False,
        poll_base_interval_ms=10,
        poll_max_backoff_ms=40,
        poll_max_attempts=6,
        poll_pause_ms=100,
        poll_request_timeout_seconds=1.0,
        consignment_retry_delays_seconds=(0.0, 0.0, 0.0),
    )


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from batchsale.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Synchronous test client (lifespan not run)."""
    return TestClient(app)
