"""
Tests for API Routes.

Route handlers are exercised through TestClient with the sale pipeline
replaced by a mock; error mapping is checked per exception type.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from batchsale.api.dependencies import get_pipeline
from batchsale.exceptions import (
    ConsignmentNotReadyError,
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceExpiredError,
    InvoiceNotFoundError,
    InvoicePersistError,
    ProcessorUnavailableError,
    WebhookVerificationError,
)
from batchsale.models.api import InvoiceStatus, Tier
from batchsale.models.domain import InvoiceStatusView, LedgerStats
from batchsale.services.game_sessions import GameSessionRegistry
from batchsale.services.issuer import IssueResult
from batchsale.services.sale import SalePipeline, WebhookOutcome


@pytest.fixture
def pipeline(game_session_store, clock) -> MagicMock:
    """Mock SalePipeline with async operations and a real game session registry."""
    pipeline = MagicMock()
    pipeline.complete_game_session = AsyncMock(
        side_effect=GameSessionRegistry(game_session_store, clock=clock).complete
    )
    pipeline.issue_purchase_or_replay = AsyncMock()
    pipeline.get_invoice_status = AsyncMock()
    pipeline.get_consignment = AsyncMock()
    pipeline.handle_webhook = AsyncMock()
    pipeline.repository.ping = AsyncMock()
    pipeline.processor.ping = AsyncMock()
    pipeline.monitor.active_count = 3
    pipeline.get_ledger_stats = MagicMock(
        return_value=LedgerStats(
            total_supply=19_530_000,
            total_distributed=3_500,
            remaining=19_526_500,
            remaining_batches=27_895,
            tokens_per_batch=700,
            price_per_batch_sats=2000,
            percent_sold=0.02,
        )
    )
    return pipeline


@pytest.fixture
def api_client(app: FastAPI, pipeline: MagicMock):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def purchase_body(**overrides) -> dict:
    body = {
        "rgb_invoice": "rgb:~/~/~/bc:utxob:abc123",
        "batch_count": 5,
        "game_session_id": "session-0001",
        "tier": "bronze",
        "idempotency_key": "purchase-attempt-0001",
    }
    body.update(overrides)
    return body


class TestGameScore:
    """Tests for POST /v1/game/score."""

    def test_silver(self, api_client, game_session_store):
        response = api_client.post("/v1/game/score", json={"score": 20})

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "silver"
        assert data["max_batches"] == 8
        assert data["eligible"] is True
        assert game_session_store.sessions[data["session_id"]].tier == Tier.SILVER
        assert data["valid_until"] == "2026-10-19T13:00:00+00:00"

    def test_ungated(self, api_client):
        data = api_client.post("/v1/game/score", json={"score": 4}).json()
        assert data["tier"] is None
        assert data["eligible"] is False
        assert data["max_batches"] == 0
        assert data["session_id"] is None

    def test_negative_rejected(self, api_client):
        assert api_client.post("/v1/game/score", json={"score": -1}).status_code == 422


class TestCreatePurchase:
    """Tests for POST /v1/purchases."""

    def test_created(self, api_client, pipeline, make_invoice):
        invoice = make_invoice(batch_count=5)
        pipeline.issue_purchase_or_replay.return_value = IssueResult(invoice, replayed=False)

        response = api_client.post("/v1/purchases", json=purchase_body())

        assert response.status_code == 201
        data = response.json()
        assert data["invoice_id"] == invoice.id
        assert data["amount_sats"] == 10_000
        assert data["token_amount"] == 3_500
        assert data["status"] == "pending"
        request = pipeline.issue_purchase_or_replay.call_args.args[0]
        assert request.tier == Tier.BRONZE
        assert request.batch_count == 5
        assert request.game_session_id == "session-0001"

    def test_replay_returns_200(self, api_client, pipeline, make_invoice):
        pipeline.issue_purchase_or_replay.return_value = IssueResult(make_invoice(), replayed=True)

        response = api_client.post("/v1/purchases", json=purchase_body())

        assert response.status_code == 200

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (InvalidRequestError("bronze tier allows 1 to 5 batches, got 6"), 400),
            (IdempotencyConflictError("inv-1"), 409),
            (InvoiceExpiredError("inv-1"), 410),
            (ProcessorUnavailableError("HTTP 502"), 503),
            (InvoicePersistError("inv-1", "btc-1"), 503),
        ],
    )
    def test_error_mapping(self, api_client, pipeline, error, status_code):
        pipeline.issue_purchase_or_replay.side_effect = error

        response = api_client.post("/v1/purchases", json=purchase_body())

        assert response.status_code == status_code

    def test_processor_unavailable_retry_after(self, api_client, pipeline):
        pipeline.issue_purchase_or_replay.side_effect = ProcessorUnavailableError("down")

        response = api_client.post("/v1/purchases", json=purchase_body())

        assert response.headers["Retry-After"] == "30"

    def test_invalid_message_passed_through(self, api_client, pipeline):
        pipeline.issue_purchase_or_replay.side_effect = InvalidRequestError("Sale ended")
        assert api_client.post("/v1/purchases", json=purchase_body()).json()["detail"] == "Sale ended"

    def test_unknown_tier_is_422(self, api_client):
        response = api_client.post("/v1/purchases", json=purchase_body(tier="platinum"))
        assert response.status_code == 422

    def test_persist_failure_retry_after(self, api_client, pipeline):
        pipeline.issue_purchase_or_replay.side_effect = InvoicePersistError("inv-1", "btc-1")

        response = api_client.post("/v1/purchases", json=purchase_body())

        assert response.headers["Retry-After"] == "30"
        assert "same idempotency key" in response.json()["detail"]

    def test_game_session_required(self, api_client):
        body = purchase_body()
        del body["game_session_id"]
        assert api_client.post("/v1/purchases", json=body).status_code == 422


class TestInvoiceStatus:
    """Tests for GET /v1/invoices/{invoice_id}."""

    def test_pending(self, api_client, pipeline, make_invoice):
        invoice = make_invoice()
        pipeline.get_invoice_status.return_value = InvoiceStatusView(invoice, "Waiting for payment")

        response = api_client.get(f"/v1/invoices/{invoice.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["is_terminal"] is False
        assert data["requires_operator_action"] is False
        assert data["paid_at"] is None
        assert data["message"] == "Waiting for payment"

    def test_settlement_failed_flags(self, api_client, pipeline, make_invoice):
        invoice = make_invoice()
        now = datetime.now(UTC)
        failed = invoice.transition(InvoiceStatus.PAID, now).transition(
            InvoiceStatus.SETTLEMENT_FAILED, now, "supply_exhausted"
        )
        pipeline.get_invoice_status.return_value = InvoiceStatusView(failed, "Operator notified")

        data = api_client.get(f"/v1/invoices/{invoice.id}").json()

        assert data["status"] == "settlement_failed"
        assert data["requires_operator_action"] is True
        assert data["paid_at"] is not None

    def test_not_found(self, api_client, pipeline):
        pipeline.get_invoice_status.side_effect = InvoiceNotFoundError("missing")
        assert api_client.get("/v1/invoices/missing").status_code == 404


class TestConsignment:
    """Tests for GET /v1/invoices/{invoice_id}/consignment."""

    def test_download(self, api_client, pipeline):
        pipeline.get_consignment.return_value = b"RGBC\x00\x01"

        response = api_client.get("/v1/invoices/inv-1/consignment")

        assert response.status_code == 200
        assert response.content == b"RGBC\x00\x01"
        assert response.headers["content-type"] == "application/octet-stream"
        assert 'filename="rgb_consignment_inv-1.rgb"' in response.headers["content-disposition"]

    def test_not_ready(self, api_client, pipeline):
        pipeline.get_consignment.side_effect = ConsignmentNotReadyError("inv-1", "settling")
        assert api_client.get("/v1/invoices/inv-1/consignment").status_code == 409

    def test_not_found(self, api_client, pipeline):
        pipeline.get_consignment.side_effect = InvoiceNotFoundError("inv-1")
        assert api_client.get("/v1/invoices/inv-1/consignment").status_code == 404


class TestLedgerStats:
    """Tests for GET /v1/ledger/stats."""

    def test_stats(self, api_client):
        data = api_client.get("/v1/ledger/stats").json()

        assert data["total_distributed"] == 3_500
        assert data["remaining_batches"] == 27_895
        assert data["percent_sold"] == 0.02


class TestWebhook:
    """Tests for POST /v1/webhooks/btcpay."""

    def test_passes_raw_body_and_signature(self, api_client, pipeline):
        pipeline.handle_webhook.return_value = WebhookOutcome("InvoiceSettled", "btc-1", True)
        body = b'{"type":"InvoiceSettled","invoiceId":"btc-1"}'

        response = api_client.post(
            "/v1/webhooks/btcpay", content=body, headers={"BTCPay-Sig": "sha256=abc"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": "InvoiceSettled", "handled": True}
        pipeline.handle_webhook.assert_awaited_once_with(body, "sha256=abc")

    def test_verification_failure(self, api_client, pipeline):
        pipeline.handle_webhook.side_effect = WebhookVerificationError("Invalid signature")

        response = api_client.post("/v1/webhooks/btcpay", content=b"{}")

        assert response.status_code == 400


class TestHealth:
    """Tests for /health and service endpoints."""

    def test_healthy(self, api_client):
        data = api_client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["active_invoices"] == 3

    def test_database_down(self, api_client, pipeline):
        pipeline.repository.ping.side_effect = ConnectionError("refused")
        assert api_client.get("/health").status_code == 503

    def test_root(self, api_client):
        assert api_client.get("/").json()["status"] == "running"

    def test_metrics(self, api_client):
        response = api_client.get("/metrics")
        assert response.status_code == 200
        assert "batchsale_http_requests_total" in response.text

    def test_pipeline_not_started(self, client, app):
        app.state.pipeline = None
        assert client.get("/v1/ledger/stats").status_code == 503


class TestEndToEnd:
    """Full purchase flow over HTTP with the mock processor and transfer engine."""

    async def test_purchase_to_download(self, app, repository, processor, transfer_engine, test_settings):
        pipeline = SalePipeline(repository, processor, transfer_engine, test_settings)
        await pipeline.start()
        app.state.pipeline = pipeline
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
                score = (await http.post("/v1/game/score", json={"score": 12})).json()
                assert score["tier"] == "bronze"

                body = purchase_body(
                    rgb_invoice="rgb:utxob:buyer-utxo", tier=None, game_session_id=score["session_id"]
                )
                created = await http.post("/v1/purchases", json=body)
                assert created.status_code == 201
                invoice_id = created.json()["invoice_id"]

                replay = await http.post("/v1/purchases", json=body)
                assert replay.status_code == 200
                assert replay.json()["invoice_id"] == invoice_id

                early = await http.get(f"/v1/invoices/{invoice_id}/consignment")
                assert early.status_code == 409

                stored = await repository.get_invoice(invoice_id)
                payload, signature = processor.mark_paid(stored.processor_invoice_id)
                ack = await http.post(
                    "/v1/webhooks/btcpay", content=payload, headers={"BTCPay-Sig": signature}
                )
                assert ack.json()["handled"] is True

                deadline = asyncio.get_running_loop().time() + 3
                while True:
                    status = (await http.get(f"/v1/invoices/{invoice_id}")).json()
                    if status["consignment_ready"] or asyncio.get_running_loop().time() > deadline:
                        break
                    await asyncio.sleep(0.01)
                assert status["status"] == "settled"
                assert status["consignment_ready"] is True

                download = await http.get(f"/v1/invoices/{invoice_id}/consignment")
                assert download.content.startswith(b"RGBC")

                stats = (await http.get("/v1/ledger/stats")).json()
                assert stats["total_distributed"] == 3_500
        finally:
            await pipeline.stop()
            app.state.pipeline = None

    async def test_rejected_purchase_never_hits_processor(
        self, app, repository, processor, transfer_engine, test_settings
    ):
        pipeline = SalePipeline(repository, processor, transfer_engine, test_settings)
        await pipeline.start()
        app.state.pipeline = pipeline
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
                score = (await http.post("/v1/game/score", json={"score": 12})).json()
                response = await http.post(
                    "/v1/purchases",
                    json=purchase_body(batch_count=6, game_session_id=score["session_id"]),
                )
            assert response.status_code == 400
            assert processor.create_calls == 0
        finally:
            await pipeline.stop()
            app.state.pipeline = None

    async def test_forged_session_cannot_claim_gold(
        self, app, repository, processor, transfer_engine, test_settings
    ):
        pipeline = SalePipeline(repository, processor, transfer_engine, test_settings)
        await pipeline.start()
        app.state.pipeline = pipeline
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
                response = await http.post(
                    "/v1/purchases",
                    json=purchase_body(tier="gold", batch_count=10, game_session_id="made-up"),
                )
            assert response.status_code == 400
            assert response.json()["detail"] == "No completed game found for this session"
            assert processor.create_calls == 0
        finally:
            await pipeline.stop()
            app.state.pipeline = None

