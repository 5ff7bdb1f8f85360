"""
Invoice Issuer - Validates purchase requests and mints Lightning invoices.

Validation is fail-fast in a fixed order, first violation wins:
1. RGB invoice grammar
2. Game session, tier, batch count and game score
3. Idempotency key (replay, conflict or expired)
4. Remaining supply

The payment processor is called exactly once per successful issuance and
never when validation fails. Requests sharing an idempotency key are
serialized so concurrent retries cannot mint two invoices.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from batchsale.exceptions import (
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceExpiredError,
    InvoicePersistError,
    PaymentProcessorError,
    ProcessorUnavailableError,
    WriteVerificationError,
)
from batchsale.models.api import InvoiceStatus
from batchsale.models.domain import (
    Invoice,
    PurchaseRequest,
    is_valid_idempotency_key,
    is_valid_rgb_invoice,
)
from batchsale.observability import metrics, trace_operation
from batchsale.services import tiers
from batchsale.services.game_sessions import GameSessionRegistry
from batchsale.services.ledger import DistributionLedger
from batchsale.services.payment_processor import PaymentProcessor

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class InvoiceStore(Protocol):
    """Invoice persistence used by the issuer."""

    async def insert_invoice(self, invoice: Invoice) -> Invoice: ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> Invoice | None: ...


@dataclass(frozen=True)
class IssueResult:
    """Issued invoice plus whether it was an idempotent replay."""

    invoice: Invoice
    replayed: bool


class _KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class InvoiceIssuer:
    """Turns a PurchaseRequest into a persisted, watched invoice."""

    def __init__(
        self,
        store: InvoiceStore,
        processor: PaymentProcessor,
        ledger: DistributionLedger,
        on_issued: Callable[[Invoice], None],
        price_per_batch_sats: int,
        tokens_per_batch: int,
        expiry_minutes: int = 15,
        clock: Callable[[], datetime] = utc_now,
        sessions: GameSessionRegistry | None = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._ledger = ledger
        self._on_issued = on_issued
        self._price_per_batch_sats = price_per_batch_sats
        self._tokens_per_batch = tokens_per_batch
        self._expiry = timedelta(minutes=expiry_minutes)
        self._clock = clock
        self._sessions = sessions
        self._key_locks = _KeyedLocks()

    async def issue(self, request: PurchaseRequest) -> Invoice:
        """
        Issue an invoice for the request.

        Raises:
            InvalidRequestError: validation failed (includes IdempotencyConflictError)
            InvoiceExpiredError: the key belongs to an invoice that expired unpaid
            ProcessorUnavailableError: processor could not mint the invoice
            InvoicePersistError: the minted invoice could not be stored
        """
        result = await self.issue_or_replay(request)
        return result.invoice

    async def issue_or_replay(self, request: PurchaseRequest) -> IssueResult:
        """Same as issue() but reports whether the invoice was replayed."""
        with trace_operation("issue_invoice", batch_count=request.batch_count) as span:
            try:
                self._validate_rgb_invoice(request)
                if self._sessions is not None:
                    request = await self._bind_game_session(request)
                self._validate_request(request)
                async with self._key_locks.hold(request.idempotency_key):
                    result = await self._issue_locked(request)
            except InvalidRequestError as exc:
                metrics.record_issuance("invalid")
                logger.info("purchase_rejected", reason=exc.message, field=exc.field)
                raise
            except ProcessorUnavailableError:
                metrics.record_issuance("processor_unavailable")
                raise
            except InvoicePersistError:
                metrics.record_issuance("persist_failed")
                raise
            span.set_attribute("replayed", result.replayed)
            span.set_attribute("invoice_id", result.invoice.id)
            return result

    # ========================================================================
    # Validation (steps 1 and 2)
    # ========================================================================

    def _validate_rgb_invoice(self, request: PurchaseRequest) -> None:
        if not is_valid_rgb_invoice(request.rgb_invoice):
            raise InvalidRequestError(
                "Invalid RGB invoice: expected rgb:...utxob:<blinded utxo>", field="rgb_invoice"
            )

    async def _bind_game_session(self, request: PurchaseRequest) -> PurchaseRequest:
        """Replace the claimed tier and score with the ones the server recorded."""
        assert self._sessions is not None
        session = await self._sessions.verify_for_purchase(request.game_session_id)
        if request.tier is not None and request.tier != session.tier:
            raise InvalidRequestError(
                f"Game session unlocked the {session.tier.value} tier, not {request.tier.value}",
                field="tier",
            )
        if request.game_score is not None and request.game_score != session.score:
            raise InvalidRequestError(
                "Game score does not match the completed game", field="game_score"
            )
        return replace(request, tier=session.tier, game_score=session.score)

    def _validate_request(self, request: PurchaseRequest) -> None:
        if request.tier is None:
            raise InvalidRequestError(
                "No tier unlocked: reach a qualifying game score first", field="tier"
            )

        max_batches = request.tier.max_batches
        if not 1 <= request.batch_count <= max_batches:
            raise InvalidRequestError(
                f"{request.tier.value} tier allows 1 to {max_batches} batches, "
                f"got {request.batch_count}",
                field="batch_count",
            )

        if request.game_score is not None:
            if request.game_score < 0:
                raise InvalidRequestError("Game score cannot be negative", field="game_score")
            resolution = tiers.resolve(request.game_score)
            if resolution.tier != request.tier:
                raise InvalidRequestError(
                    f"Game score {request.game_score} does not unlock the {request.tier.value} tier",
                    field="game_score",
                )

        if not is_valid_idempotency_key(request.idempotency_key):
            raise InvalidRequestError(
                "Idempotency key must be 16-255 characters of [A-Za-z0-9_-]",
                field="idempotency_key",
            )

    # ========================================================================
    # Issuance (steps 3 and 4, then mint)
    # ========================================================================

    async def _issue_locked(self, request: PurchaseRequest) -> IssueResult:
        existing = await self._store.get_by_idempotency_key(request.idempotency_key)
        if existing is not None:
            return IssueResult(invoice=self._replay(existing, request), replayed=True)

        token_amount = request.batch_count * self._tokens_per_batch
        remaining = self._ledger.remaining
        if remaining <= 0:
            raise InvalidRequestError("Sale ended: all tokens have been sold", field="batch_count")
        if token_amount > remaining:
            raise InvalidRequestError(
                f"Only {remaining // self._tokens_per_batch} batches remain",
                field="batch_count",
            )

        invoice_id = str(uuid4())
        amount_sats = request.batch_count * self._price_per_batch_sats

        try:
            minted = await self._processor.create_invoice(
                amount_sats=amount_sats,
                order_id=invoice_id,
                description=f"{request.batch_count} batch(es), {token_amount} tokens",
            )
        except PaymentProcessorError as exc:
            logger.error("invoice_mint_failed", invoice_id=invoice_id, error=str(exc))
            raise ProcessorUnavailableError(exc.message) from exc

        now = self._clock()
        invoice = Invoice(
            id=invoice_id,
            idempotency_key=request.idempotency_key,
            rgb_invoice=request.rgb_invoice,
            tier=request.tier,  # type: ignore[arg-type]
            batch_count=request.batch_count,
            amount_sats=amount_sats,
            token_amount=token_amount,
            processor_invoice_id=minted.processor_invoice_id,
            payment_request=minted.payment_request,
            created_at=now,
            expires_at=now + self._expiry,
        )

        try:
            stored = await self._store.insert_invoice(invoice)
        except (SQLAlchemyError, WriteVerificationError) as exc:
            logger.error(
                "invoice_persist_failed",
                invoice_id=invoice_id,
                processor_invoice_id=minted.processor_invoice_id,
                error=str(exc),
            )
            raise InvoicePersistError(invoice_id, minted.processor_invoice_id) from exc

        if stored.id != invoice.id:
            # Another process claimed the key between lookup and insert
            return IssueResult(invoice=self._replay(stored, request), replayed=True)

        self._on_issued(stored)
        metrics.record_issuance("issued", stored.batch_count)
        logger.info(
            "invoice_issued",
            invoice_id=stored.id,
            tier=stored.tier.value,
            batch_count=stored.batch_count,
            amount_sats=stored.amount_sats,
            processor_invoice_id=stored.processor_invoice_id,
        )
        return IssueResult(invoice=stored, replayed=False)

    def _replay(self, existing: Invoice, request: PurchaseRequest) -> Invoice:
        if not existing.same_purchase(request):
            raise IdempotencyConflictError(existing.id)
        if existing.status == InvoiceStatus.EXPIRED or (
            existing.status == InvoiceStatus.PENDING and existing.is_expired_at(self._clock())
        ):
            raise InvoiceExpiredError(existing.id)

        metrics.record_issuance("replayed")
        logger.info("invoice_replayed", invoice_id=existing.id)
        return existing
