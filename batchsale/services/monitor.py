"""
Payment Monitor - Drives every live invoice through its state machine.

    PENDING -> PAID -> SETTLING -> SETTLED
    PENDING -> EXPIRED
    PAID | SETTLING -> SETTLEMENT_FAILED

Each invoice gets its own asyncio task that owns the invoice snapshot and its
PollState. A per-invoice asyncio.Lock orders transitions between the poll
path and the webhook path. At most one status request per invoice is in
flight; a webhook cancels it.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from structlog import get_logger

from batchsale.exceptions import (
    PaymentProcessorError,
    RequestSupersededError,
    TransferEngineError,
)
from batchsale.models.api import InvoiceStatus, SettleOutcome
from batchsale.models.domain import Invoice
from batchsale.observability import log_context, metrics, trace_operation
from batchsale.services.ledger import DistributionLedger
from batchsale.services.payment_processor import PaymentProcessor
from batchsale.services.polling import BackoffPolicy, InflightRequest, PollState
from batchsale.services.transfer_engine import TransferEngine

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class InvoiceWriter(Protocol):
    """Invoice persistence used by the monitor."""

    async def save_invoice(self, invoice: Invoice) -> Invoice: ...

    async def get_by_processor_id(self, processor_invoice_id: str) -> Invoice | None: ...


@dataclass(eq=False)
class _Watch:
    """Everything one watcher task owns."""

    invoice: Invoice
    poll_state: PollState[Any]
    inflight: InflightRequest
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class PaymentMonitor:
    """Owns one watcher task per non-terminal invoice."""

    def __init__(
        self,
        store: InvoiceWriter,
        processor: PaymentProcessor,
        ledger: DistributionLedger,
        transfer_engine: TransferEngine,
        policy: BackoffPolicy,
        request_timeout: float = 10.0,
        delivery_retry_delays: tuple[float, ...] = (5.0, 15.0, 60.0),
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._processor = processor
        self._ledger = ledger
        self._engine = transfer_engine
        self._policy = policy
        self._request_timeout = request_timeout
        self._delivery_retry_delays = delivery_retry_delays
        self._clock = clock
        self._sleep = sleep
        self._watches: dict[str, _Watch] = {}
        self._by_processor_id: dict[str, _Watch] = {}

    # ========================================================================
    # Public operations
    # ========================================================================

    @property
    def active_count(self) -> int:
        return len(self._watches)

    def register(self, invoice: Invoice) -> bool:
        """
        Start watching an invoice.

        Terminal invoices are ignored unless they are settled and still need
        their consignment. Returns whether a new watcher was started.
        """
        if invoice.is_terminal and not invoice.awaiting_delivery:
            return False
        if invoice.id in self._watches:
            return False

        watch = _Watch(
            invoice=invoice,
            poll_state=self._policy.new_state(),
            inflight=InflightRequest(f"invoice_status:{invoice.id}"),
        )
        self._watches[invoice.id] = watch
        self._by_processor_id[invoice.processor_invoice_id] = watch
        watch.task = asyncio.create_task(self._run(watch), name=f"invoice-watch-{invoice.id}")
        watch.task.add_done_callback(lambda _t, w=watch: self._forget(w))
        metrics.active_watchers.set(len(self._watches))
        logger.info("invoice_watch_started", invoice_id=invoice.id, status=invoice.status.value)
        return True

    def resume(self, invoices: list[Invoice]) -> int:
        """Restart recovery: re-register every invoice that still needs work."""
        started = sum(1 for invoice in invoices if self.register(invoice))
        logger.info("invoice_watches_resumed", resumed=started, candidates=len(invoices))
        return started

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        """Current in-memory snapshot, if the invoice is being watched."""
        watch = self._watches.get(invoice_id)
        return watch.invoice if watch is not None else None

    async def handle_payment_confirmed(self, processor_invoice_id: str) -> Invoice | None:
        """
        Webhook path for a payment confirmation.

        Cancels any in-flight poll, enforces expiry and applies the same
        idempotent PENDING -> PAID transition the poll path uses. Returns the
        resulting snapshot, or None when the processor id is unknown.
        """
        watch = self._by_processor_id.get(processor_invoice_id)

        if watch is None:
            invoice = await self._store.get_by_processor_id(processor_invoice_id)
            if invoice is None:
                logger.warning(
                    "payment_confirmation_for_unknown_invoice",
                    processor_invoice_id=processor_invoice_id,
                )
                return None
            if invoice.status == InvoiceStatus.EXPIRED:
                self._late_payment(invoice)
                return invoice
            if invoice.is_terminal:
                logger.info(
                    "payment_confirmation_duplicate",
                    invoice_id=invoice.id,
                    status=invoice.status.value,
                )
                return invoice
            self.register(invoice)
            watch = self._watches[invoice.id]

        watch.inflight.cancel()
        with log_context(invoice_id=watch.invoice.id):
            await self._confirm(watch, watch.invoice.amount_sats, source="webhook")
        return watch.invoice

    async def stop(self) -> None:
        """Cancel every watcher task and wait for them to finish."""
        tasks = [w.task for w in self._watches.values() if w.task is not None]
        for watch in self._watches.values():
            watch.inflight.cancel()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("invoice_watches_stopped", stopped=len(tasks))

    # ========================================================================
    # Watcher loop
    # ========================================================================

    async def _run(self, watch: _Watch) -> None:
        with log_context(invoice_id=watch.invoice.id):
            while True:
                invoice = watch.invoice
                try:
                    if invoice.status == InvoiceStatus.PENDING:
                        await self._pending_step(watch)
                    elif invoice.status in (InvoiceStatus.PAID, InvoiceStatus.SETTLING):
                        await self._settle(watch)
                    elif invoice.awaiting_delivery:
                        await self._deliver(watch)
                        return
                    else:
                        return
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    # Persistence or ledger failure; back off and re-drive
                    delay_ms = self._policy.record_failure(watch.poll_state)
                    metrics.record_error(type(exc).__name__, "invoice_watch")
                    logger.exception(
                        "invoice_watch_step_failed",
                        status=invoice.status.value,
                        retry_in_ms=delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)

    async def _pending_step(self, watch: _Watch) -> None:
        now = self._clock()
        if watch.invoice.is_expired_at(now):
            await self._expire(watch)
            return

        delay_ms = await self._poll_once(watch)
        if watch.invoice.status != InvoiceStatus.PENDING:
            return

        # Never sleep past expiry
        until_expiry = (watch.invoice.expires_at - self._clock()).total_seconds()
        timeout = max(0.0, min(delay_ms / 1000, until_expiry))
        watch.wake.clear()
        try:
            await asyncio.wait_for(watch.wake.wait(), timeout=timeout)
        except TimeoutError:
            pass

    async def _poll_once(self, watch: _Watch) -> int:
        """One status request. Returns the delay before the next one in ms."""
        state = watch.poll_state
        if state.is_paused:
            self._policy.resume(state)
            logger.info("invoice_poll_resumed")

        try:
            status = await watch.inflight.run(
                self._processor.get_invoice_status(watch.invoice.processor_invoice_id),
                timeout=self._request_timeout,
            )
        except RequestSupersededError:
            return self._policy.base_ms
        except (PaymentProcessorError, TimeoutError) as exc:
            delay_ms = self._policy.record_failure(state)
            metrics.poll_failures_total.labels(poller="invoice").inc()
            metrics.record_processor_call("get_invoice_status", False)
            logger.warning(
                "invoice_poll_failed",
                error=str(exc),
                attempts=state.attempts,
                retry_in_ms=delay_ms,
                paused=state.is_paused,
            )
            return delay_ms

        metrics.record_processor_call("get_invoice_status", True)
        delay_ms = self._policy.record_success(state, status, self._clock())
        if status.paid:
            await self._confirm(watch, status.paid_amount_sats, source="poll")
        return delay_ms

    # ========================================================================
    # Transitions
    # ========================================================================

    async def _confirm(self, watch: _Watch, paid_amount_sats: int, source: str) -> None:
        async with watch.lock:
            invoice = watch.invoice

            if invoice.status == InvoiceStatus.EXPIRED:
                self._late_payment(invoice)
                return
            if invoice.status != InvoiceStatus.PENDING:
                logger.info(
                    "payment_confirmation_duplicate", status=invoice.status.value, source=source
                )
                return

            now = self._clock()
            if invoice.is_expired_at(now):
                await self._persist(watch, invoice.transition(InvoiceStatus.EXPIRED, now))
                logger.info("invoice_expired", expires_at=invoice.expires_at.isoformat())
                self._late_payment(watch.invoice)
                return

            if paid_amount_sats < invoice.amount_sats:
                logger.warning(
                    "invoice_underpaid",
                    paid_amount_sats=paid_amount_sats,
                    amount_sats=invoice.amount_sats,
                    source=source,
                )
                return

            await self._persist(watch, invoice.transition(InvoiceStatus.PAID, now))
            logger.info("invoice_paid", amount_sats=invoice.amount_sats, source=source)
            watch.wake.set()

    async def _expire(self, watch: _Watch) -> None:
        async with watch.lock:
            invoice = watch.invoice
            now = self._clock()
            if invoice.status != InvoiceStatus.PENDING or not invoice.is_expired_at(now):
                return
            await self._persist(watch, invoice.transition(InvoiceStatus.EXPIRED, now))
            logger.info("invoice_expired", expires_at=invoice.expires_at.isoformat())

    async def _settle(self, watch: _Watch) -> None:
        async with watch.lock:
            invoice = watch.invoice
            with trace_operation("invoice_settle", invoice_id=invoice.id) as span:
                if invoice.status == InvoiceStatus.PAID:
                    invoice = await self._persist(
                        watch, invoice.transition(InvoiceStatus.SETTLING, self._clock())
                    )

                result = await self._ledger.settle(invoice.id, invoice.token_amount)
                span.set_attribute("outcome", result.outcome.value)

                if result.succeeded:
                    await self._persist(
                        watch, invoice.transition(InvoiceStatus.SETTLED, self._clock())
                    )
                    logger.info(
                        "invoice_settled",
                        token_amount=invoice.token_amount,
                        duplicate=result.outcome == SettleOutcome.DUPLICATE,
                    )
                    return

                reason = f"{result.outcome.value}: {result.remaining} tokens remaining"
                await self._persist(
                    watch,
                    invoice.transition(InvoiceStatus.SETTLEMENT_FAILED, self._clock(), reason),
                )
                metrics.record_incident("settlement_failed")
                logger.critical(
                    "settlement_failed_operator_action_required",
                    amount_sats=invoice.amount_sats,
                    token_amount=invoice.token_amount,
                    processor_invoice_id=invoice.processor_invoice_id,
                    remaining=result.remaining,
                )

    async def _deliver(self, watch: _Watch) -> None:
        """Generate the consignment with retries; leave SETTLED on final failure."""
        invoice = watch.invoice
        delays = (0.0, *self._delivery_retry_delays)

        for attempt, delay in enumerate(delays, start=1):
            if delay:
                await self._sleep(delay)
            try:
                artifact = await self._engine.generate_consignment(
                    invoice.rgb_invoice, invoice.token_amount, invoice.id
                )
            except TransferEngineError as exc:
                metrics.consignments_total.labels(success="False").inc()
                logger.warning("consignment_attempt_failed", attempt=attempt, error=str(exc))
                continue

            metrics.consignments_total.labels(success="True").inc()
            async with watch.lock:
                await self._persist(watch, watch.invoice.with_artifact(artifact, self._clock()))
            logger.info("consignment_delivered", attempt=attempt)
            return

        metrics.record_incident("consignment_delivery_failed")
        logger.error(
            "consignment_delivery_failed",
            attempts=len(delays),
            token_amount=invoice.token_amount,
            processor_invoice_id=invoice.processor_invoice_id,
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _persist(self, watch: _Watch, invoice: Invoice) -> Invoice:
        """Write the new snapshot through, then adopt it in memory."""
        previous = watch.invoice.status
        await self._store.save_invoice(invoice)
        watch.invoice = invoice
        if invoice.status != previous:
            metrics.record_transition(invoice.status.value)
            logger.info(
                "invoice_transition", from_status=previous.value, to_status=invoice.status.value
            )
        return invoice

    def _late_payment(self, invoice: Invoice) -> None:
        metrics.record_incident("late_payment_for_expired_invoice")
        logger.error(
            "late_payment_for_expired_invoice",
            invoice_id=invoice.id,
            amount_sats=invoice.amount_sats,
            processor_invoice_id=invoice.processor_invoice_id,
        )

    def _forget(self, watch: _Watch) -> None:
        if self._watches.get(watch.invoice.id) is watch:
            del self._watches[watch.invoice.id]
        if self._by_processor_id.get(watch.invoice.processor_invoice_id) is watch:
            del self._by_processor_id[watch.invoice.processor_invoice_id]
        metrics.active_watchers.set(len(self._watches))
