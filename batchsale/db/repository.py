"""
Sale Repository - Persistence for invoices, game sessions and the distribution ledger.

NO DICTIONARIES - Rows are converted to immutable domain models at the edge.

Write operations follow the pattern:
1. Execute write
2. Flush to database
3. Read back and verify
4. Commit
"""

from datetime import UTC, datetime

from sqlalchemy import and_, delete, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from batchsale.db.models import GameSessionRecord, InvoiceRecord, LedgerState, Settlement
from batchsale.exceptions import (
    DuplicateSettlementError,
    InvoiceNotFoundError,
    SupplyExhaustedError,
    WriteVerificationError,
)
from batchsale.models.api import InvoiceStatus, Tier
from batchsale.models.domain import GameSession, Invoice, LedgerSnapshot

logger = get_logger(__name__)

LEDGER_ROW_ID = 1

_TERMINAL_STATUSES = tuple(s.value for s in InvoiceStatus if s.is_terminal)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SaleRepository:
    """Async SQLAlchemy store for invoices, settlements and the ledger total."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ========================================================================
    # Invoices
    # ========================================================================

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        """
        Insert a new invoice.

        If another request won the race for the same idempotency key, the row
        that holds the key is returned instead; callers compare ids.
        """
        async with self._session_factory() as session:
            record = InvoiceRecord(
                id=invoice.id,
                idempotency_key=invoice.idempotency_key,
                rgb_invoice=invoice.rgb_invoice,
                tier=invoice.tier.value,
                batch_count=invoice.batch_count,
                amount_sats=invoice.amount_sats,
                token_amount=invoice.token_amount,
                processor_invoice_id=invoice.processor_invoice_id,
                payment_request=invoice.payment_request,
                status=invoice.status.value,
                created_at=invoice.created_at,
                expires_at=invoice.expires_at,
            )
            session.add(record)

            try:
                await session.flush()
            except IntegrityError:
                # Race condition - key claimed by a concurrent request
                await session.rollback()
                existing = await self._find_by_idempotency_key(session, invoice.idempotency_key)
                if existing is None:
                    raise WriteVerificationError(
                        f"Invoice {invoice.id} insert failed without a conflicting key"
                    )
                logger.warning(
                    "invoice_insert_lost_race",
                    invoice_id=invoice.id,
                    existing_invoice_id=existing.id,
                )
                return self._record_to_domain(existing)

            verified = await session.get(InvoiceRecord, invoice.id)
            if verified is None:
                raise WriteVerificationError(f"Invoice {invoice.id} not found after insert")

            await session.commit()
            return self._record_to_domain(verified)

    async def save_invoice(self, invoice: Invoice) -> Invoice:
        """Persist the mutable lifecycle fields of an invoice snapshot."""
        async with self._session_factory() as session:
            record = await session.get(InvoiceRecord, invoice.id)
            if record is None:
                raise InvoiceNotFoundError(invoice.id)

            record.status = invoice.status.value
            record.paid_at = invoice.paid_at
            record.settled_at = invoice.settled_at
            record.failure_reason = invoice.failure_reason
            record.transfer_artifact = invoice.transfer_artifact
            record.delivered_at = invoice.delivered_at
            record.archived_at = invoice.archived_at
            await session.flush()

            verified = await session.get(InvoiceRecord, invoice.id)
            if verified is None or verified.status != invoice.status.value:
                raise WriteVerificationError(f"Invoice {invoice.id} status not persisted")

            await session.commit()
            return self._record_to_domain(verified)

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        async with self._session_factory() as session:
            record = await session.get(InvoiceRecord, invoice_id)
            return self._record_to_domain(record) if record is not None else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Invoice | None:
        async with self._session_factory() as session:
            record = await self._find_by_idempotency_key(session, idempotency_key)
            return self._record_to_domain(record) if record is not None else None

    async def get_by_processor_id(self, processor_invoice_id: str) -> Invoice | None:
        async with self._session_factory() as session:
            stmt = select(InvoiceRecord).where(
                InvoiceRecord.processor_invoice_id == processor_invoice_id
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return self._record_to_domain(record) if record is not None else None

    async def list_active(self) -> list[Invoice]:
        """
        Invoices that still need a watcher after restart.

        Non-terminal invoices plus settled invoices whose consignment was
        never delivered.
        """
        async with self._session_factory() as session:
            stmt = (
                select(InvoiceRecord)
                .where(
                    InvoiceRecord.archived_at.is_(None),
                    or_(
                        InvoiceRecord.status.not_in(_TERMINAL_STATUSES),
                        and_(
                            InvoiceRecord.status == InvoiceStatus.SETTLED.value,
                            InvoiceRecord.transfer_artifact.is_(None),
                        ),
                    ),
                )
                .order_by(InvoiceRecord.created_at)
            )
            result = await session.execute(stmt)
            return [self._record_to_domain(r) for r in result.scalars().all()]

    async def archive_terminal(self, before: datetime, now: datetime) -> int:
        """
        Mark terminal invoices created before the cutoff as archived.

        Settled invoices still waiting for their consignment are kept live.
        Returns the number of invoices archived.
        """
        async with self._session_factory() as session:
            stmt = (
                update(InvoiceRecord)
                .where(
                    InvoiceRecord.archived_at.is_(None),
                    InvoiceRecord.created_at < before,
                    InvoiceRecord.status.in_(_TERMINAL_STATUSES),
                    or_(
                        InvoiceRecord.status != InvoiceStatus.SETTLED.value,
                        InvoiceRecord.transfer_artifact.is_not(None),
                    ),
                )
                .values(archived_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

    # ========================================================================
    # Game sessions
    # ========================================================================

    async def insert_game_session(self, game_session: GameSession) -> GameSession:
        async with self._session_factory() as session:
            session.add(
                GameSessionRecord(
                    id=game_session.id,
                    score=game_session.score,
                    tier=game_session.tier.value,
                    completed_at=game_session.completed_at,
                    valid_until=game_session.valid_until,
                )
            )
            await session.flush()

            verified = await session.get(GameSessionRecord, game_session.id)
            if verified is None:
                raise WriteVerificationError(f"Game session {game_session.id} not found after insert")

            await session.commit()
            return self._game_session_to_domain(verified)

    async def get_game_session(self, session_id: str) -> GameSession | None:
        async with self._session_factory() as session:
            record = await session.get(GameSessionRecord, session_id)
            return self._game_session_to_domain(record) if record is not None else None

    async def delete_game_sessions(self, valid_before: datetime) -> int:
        """Delete game sessions whose validity ended before the cutoff. Returns the count."""
        async with self._session_factory() as session:
            stmt = (
                delete(GameSessionRecord)
                .where(GameSessionRecord.valid_until < valid_before)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

    # ========================================================================
    # Ledger
    # ========================================================================

    async def load_ledger(self, total_supply: int) -> LedgerSnapshot:
        """Load the persisted ledger, creating the single row on first start."""
        async with self._session_factory() as session:
            state = await session.get(LedgerState, LEDGER_ROW_ID)
            if state is None:
                state = LedgerState(
                    id=LEDGER_ROW_ID, total_supply=total_supply, total_distributed=0
                )
                session.add(state)
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    state = await session.get(LedgerState, LEDGER_ROW_ID)
                    if state is None:
                        raise WriteVerificationError("Ledger state creation failed")
                else:
                    await session.commit()
                    logger.info("ledger_state_created", total_supply=total_supply)

            if state.total_supply != total_supply:
                logger.warning(
                    "ledger_supply_mismatch",
                    persisted_supply=state.total_supply,
                    configured_supply=total_supply,
                )

            result = await session.execute(select(Settlement.invoice_id, Settlement.token_amount))
            settlements = tuple((row.invoice_id, int(row.token_amount)) for row in result)

            return LedgerSnapshot(
                total_supply=int(state.total_supply),
                total_distributed=int(state.total_distributed),
                settlements=settlements,
            )

    async def record_settlement(self, invoice_id: str, token_amount: int) -> int:
        """
        Insert a settlement and bump the ledger total in one transaction.

        The total is bumped with a conditional UPDATE so the database itself
        refuses to exceed total supply. Returns the new total distributed.

        Raises:
            DuplicateSettlementError: invoice already has a settlement row
            SupplyExhaustedError: total would exceed supply
            WriteVerificationError: read-back did not match the write
        """
        async with self._session_factory() as session:
            session.add(Settlement(invoice_id=invoice_id, token_amount=token_amount))
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateSettlementError(invoice_id) from exc

            stmt = (
                update(LedgerState)
                .where(
                    LedgerState.id == LEDGER_ROW_ID,
                    LedgerState.total_distributed + token_amount <= LedgerState.total_supply,
                )
                .values(total_distributed=LedgerState.total_distributed + token_amount)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                state = await session.get(LedgerState, LEDGER_ROW_ID)
                remaining = (
                    int(state.total_supply - state.total_distributed) if state is not None else 0
                )
                raise SupplyExhaustedError(token_amount, remaining)

            # Read back inside the transaction
            verified = await session.get(Settlement, invoice_id)
            if verified is None:
                raise WriteVerificationError(f"Settlement {invoice_id} not found after insert")
            total = await session.scalar(
                select(LedgerState.total_distributed).where(LedgerState.id == LEDGER_ROW_ID)
            )
            if total is None:
                raise WriteVerificationError("Ledger state disappeared during settlement")

            await session.commit()
            return int(total)

    async def ping(self) -> None:
        """Round-trip to the database; raises if unreachable."""
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _find_by_idempotency_key(
        self, session: AsyncSession, idempotency_key: str
    ) -> InvoiceRecord | None:
        stmt = select(InvoiceRecord).where(InvoiceRecord.idempotency_key == idempotency_key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _record_to_domain(self, record: InvoiceRecord) -> Invoice:
        """Convert ORM row to immutable domain model."""
        created_at = _as_utc(record.created_at)
        expires_at = _as_utc(record.expires_at)
        assert created_at is not None and expires_at is not None
        return Invoice(
            id=record.id,
            idempotency_key=record.idempotency_key,
            rgb_invoice=record.rgb_invoice,
            tier=Tier(record.tier),
            batch_count=record.batch_count,
            amount_sats=int(record.amount_sats),
            token_amount=int(record.token_amount),
            processor_invoice_id=record.processor_invoice_id,
            payment_request=record.payment_request,
            created_at=created_at,
            expires_at=expires_at,
            status=InvoiceStatus(record.status),
            paid_at=_as_utc(record.paid_at),
            settled_at=_as_utc(record.settled_at),
            transfer_artifact=record.transfer_artifact,
            delivered_at=_as_utc(record.delivered_at),
            failure_reason=record.failure_reason,
            archived_at=_as_utc(record.archived_at),
        )

    def _game_session_to_domain(self, record: GameSessionRecord) -> GameSession:
        completed_at = _as_utc(record.completed_at)
        valid_until = _as_utc(record.valid_until)
        assert completed_at is not None and valid_until is not None
        return GameSession(
            id=record.id,
            score=record.score,
            tier=Tier(record.tier),
            completed_at=completed_at,
            valid_until=valid_until,
        )
