"""
Tests for domain models.

Tests frozen dataclasses, the invoice state machine and RGB invoice grammar.
"""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime, timedelta

import pytest

from batchsale.exceptions import InvalidTransitionError
from batchsale.models.api import InvoiceStatus, SettleOutcome, Tier
from batchsale.models.domain import (
    GameSession,
    InvoiceStatusView,
    LedgerSnapshot,
    SettleResult,
    blinded_utxo,
    is_valid_idempotency_key,
    is_valid_rgb_invoice,
)


class TestRgbInvoiceGrammar:
    """Tests for is_valid_rgb_invoice and blinded_utxo."""

    @pytest.mark.parametrize(
        "value",
        [
            "rgb:utxob:abc123",
            "rgb:~/~/~/bc:utxob:2qBFPuKj-YZwHjSN-xJ5V8UcY?expiry=1700000000",
        ],
    )
    def test_valid(self, value: str):
        assert is_valid_rgb_invoice(value)

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "utxob:abc123",
            "rgb:",
            "rgb:utxob:",
            "rgb:utxob:abc 123",
            "bitcoin:utxob:abc",
            "rgb:utxob:" + "a" * 2048,
        ],
    )
    def test_invalid(self, value: str):
        assert not is_valid_rgb_invoice(value)

    def test_blinded_utxo_stops_at_query(self):
        assert blinded_utxo("rgb:~/~/~/bc:utxob:xyz-123?expiry=1") == "xyz-123"

    def test_blinded_utxo_missing(self):
        with pytest.raises(ValueError):
            blinded_utxo("rgb:nothing-here")


class TestIdempotencyKey:
    """Tests for is_valid_idempotency_key."""

    def test_valid(self):
        assert is_valid_idempotency_key("a1b2c3d4-e5f6_7890")

    @pytest.mark.parametrize("value", ["short", "has space in the key!", "x" * 256])
    def test_invalid(self, value: str):
        assert not is_valid_idempotency_key(value)


class TestInvoice:
    """Tests for Invoice dataclass."""

    def test_immutable(self, make_invoice):
        invoice = make_invoice()
        with pytest.raises(FrozenInstanceError):
            invoice.status = InvoiceStatus.PAID  # type: ignore[misc]

    def test_rejects_non_positive_amounts(self, make_invoice):
        with pytest.raises(ValueError, match="amount_sats"):
            make_invoice(amount_sats=0)

    def test_rejects_expiry_before_creation(self, make_invoice):
        invoice = make_invoice()
        with pytest.raises(ValueError, match="expires_at"):
            make_invoice(expires_at=invoice.created_at - timedelta(seconds=1))

    def test_happy_path_transitions(self, make_invoice):
        invoice = make_invoice()
        now = invoice.created_at + timedelta(minutes=1)

        invoice = invoice.transition(InvoiceStatus.PAID, now)
        assert invoice.paid_at == now
        invoice = invoice.transition(InvoiceStatus.SETTLING, now)
        invoice = invoice.transition(InvoiceStatus.SETTLED, now)

        assert invoice.status == InvoiceStatus.SETTLED
        assert invoice.settled_at == now
        assert invoice.is_terminal
        assert invoice.awaiting_delivery

    def test_transition_keeps_immutable_fields(self, make_invoice):
        invoice = make_invoice(batch_count=3)
        moved = invoice.transition(InvoiceStatus.PAID, invoice.created_at)
        assert (moved.id, moved.amount_sats, moved.batch_count) == (
            invoice.id,
            invoice.amount_sats,
            invoice.batch_count,
        )

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ((), InvoiceStatus.SETTLED),
            ((), InvoiceStatus.SETTLING),
            ((InvoiceStatus.EXPIRED,), InvoiceStatus.PAID),
            ((InvoiceStatus.PAID,), InvoiceStatus.EXPIRED),
            ((InvoiceStatus.PAID, InvoiceStatus.SETTLING, InvoiceStatus.SETTLED), InvoiceStatus.PAID),
        ],
    )
    def test_illegal_transitions(self, make_invoice, path, target):
        invoice = make_invoice()
        for status in path:
            invoice = invoice.transition(status, invoice.created_at)
        with pytest.raises(InvalidTransitionError):
            invoice.transition(target, invoice.created_at)

    def test_settlement_failed_records_reason(self, make_invoice):
        invoice = make_invoice()
        now = invoice.created_at
        invoice = invoice.transition(InvoiceStatus.PAID, now)
        failed = invoice.transition(InvoiceStatus.SETTLEMENT_FAILED, now, "supply_exhausted")
        assert failed.failure_reason == "supply_exhausted"
        assert failed.is_terminal

    def test_with_artifact_requires_settled(self, make_invoice):
        invoice = make_invoice()
        with pytest.raises(InvalidTransitionError):
            invoice.with_artifact("UkdCQw==", invoice.created_at)

    def test_with_artifact(self, make_invoice):
        invoice = make_invoice()
        now = invoice.created_at
        settled = (
            invoice.transition(InvoiceStatus.PAID, now)
            .transition(InvoiceStatus.SETTLING, now)
            .transition(InvoiceStatus.SETTLED, now)
        )
        delivered = settled.with_artifact("UkdCQw==", now)
        assert delivered.transfer_artifact == "UkdCQw=="
        assert delivered.delivered_at == now
        assert not delivered.awaiting_delivery

    def test_is_expired_at_is_strict(self, make_invoice):
        invoice = make_invoice()
        assert not invoice.is_expired_at(invoice.expires_at)
        assert invoice.is_expired_at(invoice.expires_at + timedelta(microseconds=1))

    def test_same_purchase(self, make_invoice, make_request):
        invoice = make_invoice(batch_count=5)
        assert invoice.same_purchase(make_request(batch_count=5))
        assert not invoice.same_purchase(make_request(batch_count=4))
        assert not invoice.same_purchase(make_request(batch_count=5, tier=Tier.SILVER))


class TestLedgerModels:
    """Tests for ledger value objects."""

    def test_settle_result_succeeded(self):
        for outcome, expected in (
            (SettleOutcome.SETTLED, True),
            (SettleOutcome.DUPLICATE, True),
            (SettleOutcome.SUPPLY_EXHAUSTED, False),
        ):
            result = SettleResult(outcome, "inv", 700, 700, 0)
            assert result.succeeded is expected

    def test_snapshot_rejects_negative_total(self):
        with pytest.raises(ValueError):
            LedgerSnapshot(total_supply=700, total_distributed=-1, settlements=())


class TestGameSession:
    """Tests for GameSession validity."""

    def test_valid_until_inclusive(self):
        completed_at = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        session = GameSession(
            id="s-1",
            score=12,
            tier=Tier.BRONZE,
            completed_at=completed_at,
            valid_until=completed_at + timedelta(hours=1),
        )

        assert session.is_valid_at(completed_at + timedelta(hours=1))
        assert not session.is_valid_at(completed_at + timedelta(hours=1, seconds=1))


class TestInvoiceStatusView:
    """Tests for InvoiceStatusView flags."""

    def test_requires_operator_action(self, make_invoice):
        invoice = make_invoice()
        failed = invoice.transition(InvoiceStatus.PAID, invoice.created_at).transition(
            InvoiceStatus.SETTLEMENT_FAILED, invoice.created_at, "supply_exhausted"
        )
        view = InvoiceStatusView(invoice=failed, message="operator notified")
        assert view.requires_operator_action
        assert view.is_terminal
        assert not view.consignment_ready

    def test_pending_flags(self, make_invoice):
        view = InvoiceStatusView(invoice=make_invoice(), message="waiting")
        assert view.status == InvoiceStatus.PENDING
        assert not view.is_terminal
        assert not view.requires_operator_action
