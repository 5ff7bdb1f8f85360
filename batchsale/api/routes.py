"""
API Routes - FastAPI endpoints for the purchase settlement pipeline.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from structlog import get_logger

from batchsale.api.dependencies import get_pipeline
from batchsale.config import settings
from batchsale.exceptions import (
    ConsignmentNotReadyError,
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceExpiredError,
    InvoiceNotFoundError,
    InvoicePersistError,
    ProcessorUnavailableError,
    TransferEngineError,
    WebhookVerificationError,
)
from batchsale.models.api import (
    GameScoreRequest,
    GameScoreResponse,
    HealthResponse,
    InvoiceResponse,
    InvoiceStatusResponse,
    LedgerStatsResponse,
    PurchaseRequestBody,
    WebhookAck,
)
from batchsale.models.domain import Invoice, PurchaseRequest
from batchsale.services.sale import SalePipeline

logger = get_logger(__name__)
router = APIRouter()

# Seconds a client should wait before retrying after a processor or storage outage
PROCESSOR_RETRY_AFTER_SECONDS = 30


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        invoice_id=invoice.id,
        payment_request=invoice.payment_request,
        amount_sats=invoice.amount_sats,
        batch_count=invoice.batch_count,
        token_amount=invoice.token_amount,
        tier=invoice.tier,
        status=invoice.status,
        created_at=invoice.created_at.isoformat(),
        expires_at=invoice.expires_at.isoformat(),
    )


@router.post("/v1/game/score", response_model=GameScoreResponse)
async def submit_game_score(
    body: GameScoreRequest,
    pipeline: SalePipeline = Depends(get_pipeline),
) -> GameScoreResponse:
    """Resolve the tier a finished game unlocks and issue the session a purchase must present."""
    completed = await pipeline.complete_game_session(body.score)
    resolution = completed.resolution
    session = completed.session
    if resolution.tier is None:
        message = "Score too low to unlock a purchase tier. Play again!"
    else:
        message = (
            f"{resolution.tier.value.title()} tier unlocked: "
            f"up to {resolution.max_batches} batches"
        )
    return GameScoreResponse(
        score=resolution.score,
        tier=resolution.tier,
        max_batches=resolution.max_batches,
        eligible=resolution.is_eligible,
        message=message,
        session_id=session.id if session is not None else None,
        valid_until=_iso(session.valid_until) if session is not None else None,
    )


@router.post(
    "/v1/purchases",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase(
    body: PurchaseRequestBody,
    response: Response,
    pipeline: SalePipeline = Depends(get_pipeline),
) -> InvoiceResponse:
    """
    Issue a Lightning invoice for a batch purchase.

    The tier comes from the game session named by game_session_id.
    Replaying the same idempotency key returns the original invoice with 200.
    """
    request = PurchaseRequest(
        rgb_invoice=body.rgb_invoice,
        batch_count=body.batch_count,
        tier=body.tier,
        idempotency_key=body.idempotency_key,
        game_score=body.game_score,
        game_session_id=body.game_session_id,
    )

    try:
        result = await pipeline.issue_purchase_or_replay(request)
    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except InvalidRequestError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except InvoiceExpiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail=str(exc),
        ) from exc
    except (ProcessorUnavailableError, InvoicePersistError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.message,
            headers={"Retry-After": str(PROCESSOR_RETRY_AFTER_SECONDS)},
        ) from exc

    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return _invoice_response(result.invoice)


@router.get("/v1/invoices/{invoice_id}", response_model=InvoiceStatusResponse)
async def get_invoice_status(
    invoice_id: str,
    pipeline: SalePipeline = Depends(get_pipeline),
) -> InvoiceStatusResponse:
    """Current invoice status, polled by the payment modal."""
    try:
        view = await pipeline.get_invoice_status(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    invoice = view.invoice
    return InvoiceStatusResponse(
        invoice_id=invoice.id,
        status=view.status,
        is_terminal=view.is_terminal,
        requires_operator_action=view.requires_operator_action,
        consignment_ready=view.consignment_ready,
        amount_sats=invoice.amount_sats,
        token_amount=invoice.token_amount,
        expires_at=invoice.expires_at.isoformat(),
        paid_at=_iso(invoice.paid_at),
        settled_at=_iso(invoice.settled_at),
        message=view.message,
    )


@router.get("/v1/invoices/{invoice_id}/consignment")
async def download_consignment(
    invoice_id: str,
    pipeline: SalePipeline = Depends(get_pipeline),
) -> Response:
    """Download the RGB consignment file for a settled invoice."""
    try:
        content = await pipeline.get_consignment(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except ConsignmentNotReadyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except TransferEngineError as exc:
        logger.error("consignment_decode_failed", invoice_id=invoice_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored consignment is corrupt",
        ) from exc

    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="rgb_consignment_{invoice_id}.rgb"'
        },
    )


@router.get("/v1/ledger/stats", response_model=LedgerStatsResponse)
async def get_ledger_stats(
    pipeline: SalePipeline = Depends(get_pipeline),
) -> LedgerStatsResponse:
    """Sale progress for the UI."""
    stats = pipeline.get_ledger_stats()
    return LedgerStatsResponse(
        total_supply=stats.total_supply,
        total_distributed=stats.total_distributed,
        remaining=stats.remaining,
        remaining_batches=stats.remaining_batches,
        tokens_per_batch=stats.tokens_per_batch,
        price_per_batch_sats=stats.price_per_batch_sats,
        percent_sold=stats.percent_sold,
    )


@router.post("/v1/webhooks/btcpay", response_model=WebhookAck)
async def btcpay_webhook(
    request: Request,
    btcpay_sig: str = Header("", alias="BTCPay-Sig"),
    pipeline: SalePipeline = Depends(get_pipeline),
) -> WebhookAck:
    """
    Payment processor webhook.

    The raw body is verified against the BTCPay-Sig HMAC before parsing.
    """
    payload = await request.body()
    try:
        outcome = await pipeline.handle_webhook(payload, btcpay_sig)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return WebhookAck(event_type=outcome.event_type, handled=outcome.handled)


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: SalePipeline = Depends(get_pipeline)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await pipeline.repository.ping()
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {exc}",
        ) from exc

    return HealthResponse(
        status="healthy",
        version=settings.api_version,
        active_invoices=pipeline.monitor.active_count,
    )
