"""
Tests for InvoiceIssuer.

Validation order, idempotent replay, supply checks and processor failures.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from batchsale.exceptions import (
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceExpiredError,
    InvoicePersistError,
    IssuanceErrorKind,
    ProcessorUnavailableError,
)
from batchsale.models.api import InvoiceStatus, Tier
from batchsale.services.game_sessions import GameSessionRegistry
from batchsale.services.issuer import InvoiceIssuer
from batchsale.services.ledger import DistributionLedger


@pytest.fixture
def issued() -> list:
    return []


@pytest.fixture
def issuer(invoice_store, processor, ledger, clock, issued) -> InvoiceIssuer:
    return InvoiceIssuer(
        store=invoice_store,
        processor=processor,
        ledger=ledger,
        on_issued=issued.append,
        price_per_batch_sats=2000,
        tokens_per_batch=700,
        expiry_minutes=15,
        clock=clock,
    )


class TestIssue:
    """Tests for successful issuance."""

    async def test_bronze_five_batches(self, issuer, make_request, processor, issued, clock):
        """5 bronze batches cost 10000 sats for 3500 tokens."""
        invoice = await issuer.issue(make_request(batch_count=5, tier=Tier.BRONZE))

        assert invoice.amount_sats == 10_000
        assert invoice.token_amount == 3_500
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.created_at == clock()
        assert invoice.expires_at == clock() + timedelta(minutes=15)
        assert invoice.payment_request.startswith("lnbcrt")
        assert processor.create_calls == 1
        assert issued == [invoice]

    async def test_persisted(self, issuer, make_request, invoice_store):
        invoice = await issuer.issue(make_request())
        assert invoice_store.invoices[invoice.id] == invoice

    async def test_gold_ten_batches(self, issuer, make_request):
        invoice = await issuer.issue(make_request(batch_count=10, tier=Tier.GOLD, game_score=30))
        assert invoice.amount_sats == 20_000
        assert invoice.tier == Tier.GOLD


class TestValidation:
    """Tests for request validation. None of these reach the processor."""

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"rgb_invoice": "not-an-rgb-invoice"}, "rgb_invoice"),
            ({"tier": None}, "tier"),
            ({"batch_count": 6, "tier": Tier.BRONZE}, "batch_count"),
            ({"batch_count": 0}, "batch_count"),
            ({"batch_count": 9, "tier": Tier.SILVER}, "batch_count"),
            ({"tier": Tier.GOLD, "batch_count": 5, "game_score": 12}, "game_score"),
            ({"idempotency_key": "short"}, "idempotency_key"),
        ],
    )
    async def test_rejected(self, issuer, make_request, processor, overrides, field):
        with pytest.raises(InvalidRequestError) as exc_info:
            await issuer.issue(make_request(**overrides))

        assert exc_info.value.field == field
        assert exc_info.value.kind == IssuanceErrorKind.INVALID_REQUEST
        assert not exc_info.value.retryable
        assert processor.create_calls == 0

    async def test_bronze_six_batches(self, issuer, make_request):
        with pytest.raises(InvalidRequestError, match="1 to 5"):
            await issuer.issue(make_request(batch_count=6, tier=Tier.BRONZE))

    async def test_first_violation_wins(self, issuer, make_request):
        """Bad RGB invoice is reported before the bad batch count."""
        with pytest.raises(InvalidRequestError) as exc_info:
            await issuer.issue(make_request(rgb_invoice="nope", batch_count=99))
        assert exc_info.value.field == "rgb_invoice"


class TestIdempotency:
    """Tests for idempotent replay."""

    async def test_same_key_same_invoice(self, issuer, make_request, processor, issued):
        request = make_request()
        first = await issuer.issue(request)
        second = await issuer.issue(request)

        assert second.id == first.id
        assert processor.create_calls == 1
        assert len(issued) == 1

    async def test_replay_reported(self, issuer, make_request):
        request = make_request()
        first = await issuer.issue_or_replay(request)
        second = await issuer.issue_or_replay(request)

        assert not first.replayed
        assert second.replayed
        assert second.invoice == first.invoice

    async def test_concurrent_same_key(self, issuer, make_request, processor):
        request = make_request()
        results = await asyncio.gather(*(issuer.issue(request) for _ in range(5)))

        assert len({invoice.id for invoice in results}) == 1
        assert processor.create_calls == 1

    async def test_conflict(self, issuer, make_request, processor):
        await issuer.issue(make_request(batch_count=5))

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await issuer.issue(make_request(batch_count=4))

        assert isinstance(exc_info.value, InvalidRequestError)
        assert processor.create_calls == 1

    async def test_expired_key(self, issuer, make_request, clock, processor):
        request = make_request()
        await issuer.issue(request)
        clock.advance(minutes=16)

        with pytest.raises(InvoiceExpiredError):
            await issuer.issue(request)
        assert processor.create_calls == 1

    async def test_expired_status(self, issuer, make_request, invoice_store, clock):
        request = make_request()
        invoice = await issuer.issue(request)
        invoice_store.invoices[invoice.id] = invoice.transition(InvoiceStatus.EXPIRED, clock())

        with pytest.raises(InvoiceExpiredError):
            await issuer.issue(request)

    async def test_paid_invoice_replays(self, issuer, make_request, invoice_store, clock):
        """A paid invoice is still returned for its key after expiry."""
        request = make_request()
        invoice = await issuer.issue(request)
        invoice_store.invoices[invoice.id] = invoice.transition(InvoiceStatus.PAID, clock())
        clock.advance(minutes=30)

        replayed = await issuer.issue(request)
        assert replayed.status == InvoiceStatus.PAID

    async def test_lost_insert_race_replays(self, issuer, make_request, invoice_store, make_invoice):
        """Another process inserted the key between lookup and insert."""
        request = make_request(batch_count=1)
        winner = make_invoice(idempotency_key=request.idempotency_key, batch_count=1)
        invoice_store.get_by_idempotency_key = AsyncMock(return_value=None)
        invoice_store.invoices[winner.id] = winner

        result = await issuer.issue_or_replay(request)

        assert result.replayed
        assert result.invoice.id == winner.id


class TestSupply:
    """Tests for the remaining-supply check."""

    async def test_sale_ended(self, invoice_store, processor, make_ledger_store, make_request):
        store = make_ledger_store(total_supply=700, total_distributed=700)
        store.settlements = {"earlier": 700}
        ledger = await DistributionLedger.load(store, 700, 700, 2000)
        issuer = InvoiceIssuer(invoice_store, processor, ledger, lambda _: None, 2000, 700)

        with pytest.raises(InvalidRequestError, match="Sale ended"):
            await issuer.issue(make_request(batch_count=1))
        assert processor.create_calls == 0

    async def test_not_enough_left(self, invoice_store, processor, make_ledger_store, make_request):
        ledger = await DistributionLedger.load(make_ledger_store(total_supply=2100), 2100, 700, 2000)
        issuer = InvoiceIssuer(invoice_store, processor, ledger, lambda _: None, 2000, 700)

        with pytest.raises(InvalidRequestError, match="Only 3 batches remain"):
            await issuer.issue(make_request(batch_count=4))


class TestProcessorFailure:
    """Tests for payment processor outages."""

    async def test_processor_unavailable(self, issuer, make_request, processor, invoice_store, issued):
        processor.fail_next()

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await issuer.issue(make_request())

        assert exc_info.value.retryable
        assert invoice_store.invoices == {}
        assert issued == []

    async def test_retry_after_outage(self, issuer, make_request, processor):
        """The same key can be retried after a processor failure."""
        processor.fail_next()
        request = make_request()
        with pytest.raises(ProcessorUnavailableError):
            await issuer.issue(request)

        invoice = await issuer.issue(request)
        assert invoice.status == InvoiceStatus.PENDING
        assert processor.create_calls == 2

    async def test_persist_failure_after_mint(self, issuer, make_request, processor, invoice_store, issued):
        """A database error after minting is reported with the processor invoice id."""
        invoice_store.insert_invoice = AsyncMock(
            side_effect=OperationalError("INSERT INTO invoices", {}, Exception("disk I/O error"))
        )

        with pytest.raises(InvoicePersistError) as exc_info:
            await issuer.issue(make_request())

        assert exc_info.value.kind == IssuanceErrorKind.PERSISTENCE_FAILED
        assert exc_info.value.retryable
        assert exc_info.value.processor_invoice_id.startswith("mock_")
        assert processor.create_calls == 1
        assert issued == []


@pytest.fixture
def sessions(game_session_store, clock) -> GameSessionRegistry:
    return GameSessionRegistry(game_session_store, validity_minutes=60, clock=clock)


@pytest.fixture
def gated_issuer(invoice_store, processor, ledger, clock, issued, sessions) -> InvoiceIssuer:
    return InvoiceIssuer(
        store=invoice_store,
        processor=processor,
        ledger=ledger,
        on_issued=issued.append,
        price_per_batch_sats=2000,
        tokens_per_batch=700,
        clock=clock,
        sessions=sessions,
    )


class TestGameSessionGate:
    """Tests for issuance gated on a server-issued game session."""

    async def test_tier_taken_from_session(self, gated_issuer, sessions, make_request):
        completed = await sessions.complete(30)

        invoice = await gated_issuer.issue(
            make_request(tier=None, batch_count=10, game_session_id=completed.session.id)
        )

        assert invoice.tier == Tier.GOLD
        assert invoice.batch_count == 10

    async def test_session_limits_batches(self, gated_issuer, sessions, make_request, processor):
        completed = await sessions.complete(12)

        with pytest.raises(InvalidRequestError) as exc_info:
            await gated_issuer.issue(
                make_request(tier=None, batch_count=10, game_session_id=completed.session.id)
            )

        assert exc_info.value.field == "batch_count"
        assert processor.create_calls == 0

    async def test_missing_session(self, gated_issuer, make_request, processor):
        with pytest.raises(InvalidRequestError, match="No completed game found") as exc_info:
            await gated_issuer.issue(make_request(tier=Tier.GOLD, batch_count=10))

        assert exc_info.value.field == "game_session_id"
        assert processor.create_calls == 0

    async def test_forged_session(self, gated_issuer, make_request, processor):
        with pytest.raises(InvalidRequestError, match="No completed game found"):
            await gated_issuer.issue(
                make_request(tier=Tier.GOLD, batch_count=10, game_session_id="forged-session-id")
            )
        assert processor.create_calls == 0

    async def test_expired_session(self, gated_issuer, sessions, make_request, clock):
        completed = await sessions.complete(12)
        clock.advance(minutes=61)

        with pytest.raises(InvalidRequestError, match="Please play again"):
            await gated_issuer.issue(make_request(game_session_id=completed.session.id))

    async def test_claimed_tier_must_match(self, gated_issuer, sessions, make_request, processor):
        """A bronze session cannot be upgraded by claiming gold."""
        completed = await sessions.complete(12)

        with pytest.raises(InvalidRequestError) as exc_info:
            await gated_issuer.issue(
                make_request(tier=Tier.GOLD, batch_count=10, game_session_id=completed.session.id)
            )

        assert exc_info.value.field == "tier"
        assert processor.create_calls == 0

    async def test_claimed_score_must_match(self, gated_issuer, sessions, make_request):
        completed = await sessions.complete(12)

        with pytest.raises(InvalidRequestError) as exc_info:
            await gated_issuer.issue(
                make_request(game_score=40, game_session_id=completed.session.id)
            )
        assert exc_info.value.field == "game_score"

    async def test_rgb_invoice_checked_first(self, gated_issuer, make_request):
        with pytest.raises(InvalidRequestError) as exc_info:
            await gated_issuer.issue(make_request(rgb_invoice="nope"))
        assert exc_info.value.field == "rgb_invoice"
