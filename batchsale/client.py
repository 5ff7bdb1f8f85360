"""
Sale Stats Client - httpx client for the public ledger stats endpoint.

Used by the stats poller (and the watch_stats script) to follow sale
progress the way the browser UI does.
"""

import httpx
from pydantic import ValidationError

from batchsale.models.api import LedgerStatsResponse
from batchsale.models.domain import LedgerStats


class SaleStatsClient:
    """Reads /v1/ledger/stats from a running batchsale API."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds, transport=transport
        )

    async def get_ledger_stats(self) -> LedgerStats:
        """
        Fetch current sale progress.

        Raises:
            httpx.HTTPError: transport failure or non-2xx response
            ValueError: response body is not a valid stats document
        """
        response = await self._client.get("/v1/ledger/stats")
        response.raise_for_status()
        try:
            body = LedgerStatsResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise ValueError(f"Malformed ledger stats response: {exc}") from exc
        return LedgerStats(
            total_supply=body.total_supply,
            total_distributed=body.total_distributed,
            remaining=body.remaining,
            remaining_batches=body.remaining_batches,
            tokens_per_batch=body.tokens_per_batch,
            price_per_batch_sats=body.price_per_batch_sats,
            percent_sold=body.percent_sold,
        )

    async def close(self) -> None:
        await self._client.aclose()
