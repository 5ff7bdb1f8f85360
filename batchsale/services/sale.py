"""
Sale Pipeline - Facade the HTTP layer talks to.

Wires the game sessions, issuer, monitor and ledger to the repository and the external
collaborators, and owns startup recovery and shutdown.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from structlog import get_logger

from batchsale.config import Settings
from batchsale.db.repository import SaleRepository
from batchsale.db.session import get_session_factory
from batchsale.exceptions import ConsignmentNotReadyError, InvoiceNotFoundError
from batchsale.models.api import InvoiceStatus
from batchsale.models.domain import (
    Invoice,
    InvoiceStatusView,
    LedgerStats,
    PurchaseRequest,
    TierResolution,
)
from batchsale.services import tiers
from batchsale.services.btcpay_processor import BTCPayProcessor
from batchsale.services.game_sessions import CompletedGame, GameSessionRegistry
from batchsale.services.issuer import InvoiceIssuer, IssueResult, utc_now
from batchsale.services.ledger import DistributionLedger
from batchsale.services.mock_processor import MockProcessor
from batchsale.services.monitor import PaymentMonitor
from batchsale.services.payment_processor import PaymentProcessor
from batchsale.services.polling import BackoffPolicy
from batchsale.services.transfer_engine import (
    MockTransferEngine,
    RgbProxyEngine,
    TransferEngine,
    decode_consignment,
)

logger = get_logger(__name__)

_STATUS_MESSAGES: dict[InvoiceStatus, str] = {
    InvoiceStatus.PENDING: "Waiting for Lightning payment",
    InvoiceStatus.PAID: "Payment received, allocating tokens",
    InvoiceStatus.SETTLING: "Payment received, allocating tokens",
    InvoiceStatus.SETTLED: "Tokens allocated, preparing consignment",
    InvoiceStatus.EXPIRED: "Invoice expired, start a new purchase",
    InvoiceStatus.SETTLEMENT_FAILED: (
        "Payment received but tokens could not be allocated. An operator has been notified"
    ),
}


@dataclass(frozen=True)
class WebhookOutcome:
    """What handle_webhook did with a verified event."""

    event_type: str
    processor_invoice_id: str
    handled: bool


def status_message(invoice: Invoice) -> str:
    if invoice.status == InvoiceStatus.SETTLED and invoice.transfer_artifact is not None:
        return "Tokens allocated, consignment ready for download"
    return _STATUS_MESSAGES[invoice.status]


class SalePipeline:
    """Purchase settlement pipeline."""

    def __init__(
        self,
        repository: SaleRepository,
        processor: PaymentProcessor,
        transfer_engine: TransferEngine,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.transfer_engine = transfer_engine
        self.settings = settings
        self._clock = clock
        self.game_sessions = GameSessionRegistry(
            repository, validity_minutes=settings.game_result_validity_minutes, clock=clock
        )
        self._ledger: DistributionLedger | None = None
        self._issuer: InvoiceIssuer | None = None
        self._monitor: PaymentMonitor | None = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Load the ledger and resume every invoice that still needs work."""
        s = self.settings
        self._ledger = await DistributionLedger.load(
            self.repository,
            total_supply=s.total_supply,
            tokens_per_batch=s.tokens_per_batch,
            price_per_batch_sats=s.price_per_batch_sats,
        )
        self._monitor = PaymentMonitor(
            store=self.repository,
            processor=self.processor,
            ledger=self._ledger,
            transfer_engine=self.transfer_engine,
            policy=BackoffPolicy.from_settings(s),
            request_timeout=s.poll_request_timeout_seconds,
            delivery_retry_delays=tuple(s.consignment_retry_delays_seconds),
            clock=self._clock,
        )
        self._issuer = InvoiceIssuer(
            store=self.repository,
            processor=self.processor,
            ledger=self._ledger,
            on_issued=self._monitor.register,
            price_per_batch_sats=s.price_per_batch_sats,
            tokens_per_batch=s.tokens_per_batch,
            expiry_minutes=s.invoice_expiry_minutes,
            clock=self._clock,
            sessions=self.game_sessions,
        )

        active = await self.repository.list_active()
        self._monitor.resume(active)
        logger.info("sale_pipeline_started", active_invoices=len(active))

    async def stop(self) -> None:
        if self._monitor is not None:
            await self._monitor.stop()
        await self.processor.close()
        await self.transfer_engine.close()
        logger.info("sale_pipeline_stopped")

    @property
    def ledger(self) -> DistributionLedger:
        if self._ledger is None:
            raise RuntimeError("SalePipeline.start() has not been awaited")
        return self._ledger

    @property
    def monitor(self) -> PaymentMonitor:
        if self._monitor is None:
            raise RuntimeError("SalePipeline.start() has not been awaited")
        return self._monitor

    @property
    def issuer(self) -> InvoiceIssuer:
        if self._issuer is None:
            raise RuntimeError("SalePipeline.start() has not been awaited")
        return self._issuer

    # ========================================================================
    # Operations
    # ========================================================================

    def resolve_tier(self, score: int) -> TierResolution:
        return tiers.resolve(score)

    async def complete_game_session(self, score: int) -> CompletedGame:
        return await self.game_sessions.complete(score)

    async def issue_purchase(self, request: PurchaseRequest) -> Invoice:
        return await self.issuer.issue(request)

    async def issue_purchase_or_replay(self, request: PurchaseRequest) -> IssueResult:
        return await self.issuer.issue_or_replay(request)

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Live snapshot if watched, otherwise the persisted row."""
        invoice = self.monitor.get_invoice(invoice_id)
        if invoice is None:
            invoice = await self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatusView:
        invoice = await self.get_invoice(invoice_id)
        return InvoiceStatusView(invoice=invoice, message=status_message(invoice))

    def get_ledger_stats(self) -> LedgerStats:
        return self.ledger.stats()

    async def handle_webhook(self, payload: bytes, signature: str) -> WebhookOutcome:
        """
        Verify a processor webhook and route payment confirmations.

        Raises:
            WebhookVerificationError: signature or body invalid
        """
        event = await self.processor.verify_webhook(payload, signature)
        if not event.is_payment_confirmation:
            logger.info(
                "webhook_event_ignored",
                event_type=event.event_type,
                processor_invoice_id=event.processor_invoice_id,
            )
            return WebhookOutcome(event.event_type, event.processor_invoice_id, handled=False)

        invoice = await self.monitor.handle_payment_confirmed(event.processor_invoice_id)
        return WebhookOutcome(
            event.event_type, event.processor_invoice_id, handled=invoice is not None
        )

    async def get_consignment(self, invoice_id: str) -> bytes:
        """
        Raw consignment bytes for download.

        Raises:
            InvoiceNotFoundError: unknown invoice
            ConsignmentNotReadyError: nothing delivered yet
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.transfer_artifact is None:
            raise ConsignmentNotReadyError(invoice_id, invoice.status.value)
        return decode_consignment(invoice.transfer_artifact)

    async def archive_terminal_invoices(self, now: datetime | None = None) -> int:
        """Archive terminal invoices older than the retention window and drop expired game sessions."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self.settings.invoice_retention_days)
        archived = await self.repository.archive_terminal(before=cutoff, now=now)
        logger.info("invoices_archived", archived=archived, cutoff=cutoff.isoformat())
        await self.game_sessions.purge_expired(now)
        return archived


def build_processor(settings: Settings) -> PaymentProcessor:
    if settings.payment_processor == "mock":
        return MockProcessor(
            webhook_secret=settings.btcpay_webhook_secret or "mock-webhook-secret",
            expiry_minutes=settings.invoice_expiry_minutes,
        )
    return BTCPayProcessor(
        base_url=settings.btcpay_url,
        api_key=settings.btcpay_api_key,
        store_id=settings.btcpay_store_id,
        webhook_secret=settings.btcpay_webhook_secret,
        expiry_minutes=settings.invoice_expiry_minutes,
        timeout_seconds=settings.processor_request_timeout_seconds,
    )


def build_transfer_engine(settings: Settings) -> TransferEngine:
    if settings.transfer_engine == "mock":
        return MockTransferEngine(contract_id=settings.rgb_contract_id or "rgb:mock-contract")
    return RgbProxyEngine(
        endpoint=settings.rgb_proxy_endpoint,
        contract_id=settings.rgb_contract_id,
        network=settings.rgb_network,
        timeout_seconds=settings.transfer_request_timeout_seconds,
    )


def build_pipeline(settings: Settings) -> SalePipeline:
    """Production wiring from settings."""
    return SalePipeline(
        repository=SaleRepository(get_session_factory()),
        processor=build_processor(settings),
        transfer_engine=build_transfer_engine(settings),
        settings=settings,
    )
