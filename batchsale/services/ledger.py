"""
Distribution Ledger - Monotonic record of tokens allocated to paid invoices.

The ledger is the only global serialization point of the pipeline. Every
settlement runs under one asyncio.Lock:

1. Check exactly-once (invoice id not yet settled)
2. Check supply (total_distributed + amount <= total_supply)
3. Persist (settlement row + total in one transaction)
4. Mutate memory
5. Verify invariants

A rejected settlement leaves both memory and the store unchanged.
"""

import asyncio
from typing import Protocol

from structlog import get_logger

from batchsale.exceptions import (
    DuplicateSettlementError,
    LedgerInvariantError,
    SupplyExhaustedError,
)
from batchsale.models.api import SettleOutcome
from batchsale.models.domain import LedgerSnapshot, LedgerStats, SettleResult
from batchsale.observability import metrics, trace_operation

logger = get_logger(__name__)


class LedgerStore(Protocol):
    """Durable backing for the ledger (SaleRepository in production)."""

    async def load_ledger(self, total_supply: int) -> LedgerSnapshot: ...

    async def record_settlement(self, invoice_id: str, token_amount: int) -> int: ...


class DistributionLedger:
    """In-memory ledger with write-through persistence."""

    def __init__(
        self,
        store: LedgerStore,
        total_supply: int,
        tokens_per_batch: int,
        price_per_batch_sats: int,
    ) -> None:
        if total_supply <= 0:
            raise ValueError(f"total_supply must be positive: {total_supply}")
        self._store = store
        self._total_supply = total_supply
        self._tokens_per_batch = tokens_per_batch
        self._price_per_batch_sats = price_per_batch_sats
        self._total_distributed = 0
        self._settlements: dict[str, int] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def load(
        cls,
        store: LedgerStore,
        total_supply: int,
        tokens_per_batch: int,
        price_per_batch_sats: int,
    ) -> "DistributionLedger":
        """
        Initialize from the persisted snapshot.

        Raises:
            LedgerInvariantError: persisted state is inconsistent
        """
        ledger = cls(store, total_supply, tokens_per_batch, price_per_batch_sats)
        snapshot = await store.load_ledger(total_supply)
        ledger._apply_snapshot(snapshot)
        ledger._verify_invariants()
        metrics.tokens_distributed.set(ledger.total_distributed)
        metrics.tokens_remaining.set(ledger.remaining)
        logger.info(
            "ledger_loaded",
            total_supply=ledger.total_supply,
            total_distributed=ledger.total_distributed,
            settlements=len(ledger._settlements),
        )
        return ledger

    # ========================================================================
    # Reads
    # ========================================================================

    @property
    def total_supply(self) -> int:
        return self._total_supply

    @property
    def total_distributed(self) -> int:
        return self._total_distributed

    @property
    def remaining(self) -> int:
        return self._total_supply - self._total_distributed

    def is_settled(self, invoice_id: str) -> bool:
        return invoice_id in self._settlements

    def settled_amount(self, invoice_id: str) -> int | None:
        return self._settlements.get(invoice_id)

    def stats(self) -> LedgerStats:
        """Snapshot of sale progress for the stats endpoint."""
        distributed = self._total_distributed
        remaining = self._total_supply - distributed
        return LedgerStats(
            total_supply=self._total_supply,
            total_distributed=distributed,
            remaining=remaining,
            remaining_batches=remaining // self._tokens_per_batch,
            tokens_per_batch=self._tokens_per_batch,
            price_per_batch_sats=self._price_per_batch_sats,
            percent_sold=round(distributed * 100 / self._total_supply, 2),
        )

    # ========================================================================
    # Settlement
    # ========================================================================

    async def settle(self, invoice_id: str, token_amount: int) -> SettleResult:
        """
        Allocate token_amount to invoice_id exactly once.

        Returns SETTLED on first success, DUPLICATE if the invoice already
        holds an allocation, SUPPLY_EXHAUSTED if the remaining supply is
        too small (ledger unchanged).

        Raises:
            ValueError: token_amount is not positive
            LedgerInvariantError: memory and store disagree after a write
        """
        if token_amount <= 0:
            raise ValueError(f"token_amount must be positive: {token_amount}")

        with trace_operation("ledger_settle", invoice_id=invoice_id, token_amount=token_amount) as span:
            async with self._lock:
                result = await self._settle_locked(invoice_id, token_amount)
            span.set_attribute("outcome", result.outcome.value)

        metrics.record_settlement(result.outcome.value, result.total_distributed, result.remaining)
        return result

    async def _settle_locked(self, invoice_id: str, token_amount: int) -> SettleResult:
        if invoice_id in self._settlements:
            logger.info("ledger_settlement_duplicate", invoice_id=invoice_id)
            return self._result(SettleOutcome.DUPLICATE, invoice_id, token_amount)

        if self._total_distributed + token_amount > self._total_supply:
            logger.warning(
                "ledger_supply_exhausted",
                invoice_id=invoice_id,
                requested=token_amount,
                remaining=self.remaining,
            )
            return self._result(SettleOutcome.SUPPLY_EXHAUSTED, invoice_id, token_amount)

        try:
            persisted_total = await self._store.record_settlement(invoice_id, token_amount)
        except DuplicateSettlementError:
            # Store already holds this settlement; memory is stale
            logger.warning("ledger_store_duplicate_resync", invoice_id=invoice_id)
            await self._resync()
            return self._result(SettleOutcome.DUPLICATE, invoice_id, token_amount)
        except SupplyExhaustedError as exc:
            logger.warning(
                "ledger_store_supply_exhausted_resync",
                invoice_id=invoice_id,
                requested=exc.requested,
                remaining=exc.remaining,
            )
            await self._resync()
            return self._result(SettleOutcome.SUPPLY_EXHAUSTED, invoice_id, token_amount)

        self._settlements[invoice_id] = token_amount
        self._total_distributed += token_amount
        self._verify_invariants(persisted_total)

        logger.info(
            "ledger_settled",
            invoice_id=invoice_id,
            token_amount=token_amount,
            total_distributed=self._total_distributed,
            remaining=self.remaining,
        )
        return self._result(SettleOutcome.SETTLED, invoice_id, token_amount)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _result(self, outcome: SettleOutcome, invoice_id: str, token_amount: int) -> SettleResult:
        return SettleResult(
            outcome=outcome,
            invoice_id=invoice_id,
            token_amount=token_amount,
            total_distributed=self._total_distributed,
            remaining=self.remaining,
        )

    def _apply_snapshot(self, snapshot: LedgerSnapshot) -> None:
        self._total_supply = snapshot.total_supply
        self._total_distributed = snapshot.total_distributed
        self._settlements = dict(snapshot.settlements)

    async def _resync(self) -> None:
        snapshot = await self._store.load_ledger(self._total_supply)
        self._apply_snapshot(snapshot)
        self._verify_invariants()

    def _verify_invariants(self, persisted_total: int | None = None) -> None:
        """
        Conservation checks.

        Raises:
            LedgerInvariantError: on any violation
        """
        settled_sum = sum(self._settlements.values())
        if self._total_distributed != settled_sum:
            raise LedgerInvariantError(
                f"total_distributed {self._total_distributed} != sum of settlements {settled_sum}"
            )
        if self._total_distributed > self._total_supply:
            raise LedgerInvariantError(
                f"total_distributed {self._total_distributed} exceeds supply {self._total_supply}"
            )
        if persisted_total is not None and persisted_total != self._total_distributed:
            raise LedgerInvariantError(
                f"store total {persisted_total} != memory total {self._total_distributed}"
            )
