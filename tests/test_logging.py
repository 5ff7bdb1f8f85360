"""
Tests for structured logging helpers.
"""

import structlog

from batchsale.config import settings
from batchsale.observability.logging import add_sale_context, log_context


class TestAddSaleContext:
    """Tests for the add_sale_context processor."""

    def test_adds_service_fields(self):
        event = add_sale_context(None, "info", {"event": "invoice_issued"})

        assert event["service"] == settings.service_name
        assert event["processor"] == settings.payment_processor
        assert event["network"] == settings.rgb_network
        assert event["event"] == "invoice_issued"


class TestLogContext:
    """Tests for log_context."""

    def test_binds_and_unbinds(self):
        with log_context(invoice_id="inv-1"):
            assert structlog.contextvars.get_contextvars()["invoice_id"] == "inv-1"

        assert "invoice_id" not in structlog.contextvars.get_contextvars()
