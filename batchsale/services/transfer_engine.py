"""
RGB Transfer Engine - Produces the consignment that delivers tokens to a buyer.

NO DICTIONARIES - Results are base64 strings; errors are typed exceptions.
"""

import base64
import binascii
import hashlib
from typing import Protocol

import httpx
from structlog import get_logger

from batchsale.exceptions import TransferEngineError
from batchsale.models.domain import blinded_utxo

logger = get_logger(__name__)


class TransferEngine(Protocol):
    """
    Transfer engine protocol.

    Turns a settled allocation into a consignment file for the buyer's wallet.
    """

    async def generate_consignment(
        self, rgb_invoice: str, token_amount: int, invoice_id: str
    ) -> str:
        """
        Generate a consignment for the recipient.

        Args:
            rgb_invoice: Buyer's RGB invoice (carries the blinded UTXO)
            token_amount: Tokens to transfer
            invoice_id: Our invoice id, used as the request id

        Returns:
            Base64-encoded consignment

        Raises:
            TransferEngineError: If the consignment cannot be produced
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


class RgbProxyEngine:
    """TransferEngine backed by an RGB proxy JSON-RPC endpoint."""

    def __init__(
        self,
        endpoint: str,
        contract_id: str,
        network: str = "mainnet",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.contract_id = contract_id
        self.network = network
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def generate_consignment(
        self, rgb_invoice: str, token_amount: int, invoice_id: str
    ) -> str:
        try:
            recipient = blinded_utxo(rgb_invoice)
        except ValueError as exc:
            raise TransferEngineError(str(exc)) from exc

        request = {
            "jsonrpc": "2.0",
            "method": "rgb.transfer",
            "params": {
                "contract_id": self.contract_id,
                "amount": str(token_amount),
                "recipient": recipient,
                "witness": {"type": "wpkh", "network": self.network},
            },
            "id": invoice_id,
        }

        logger.info("rgb_transfer_requested", invoice_id=invoice_id, token_amount=token_amount)
        try:
            response = await self._client.post(self.endpoint, json=request)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise TransferEngineError(f"RGB proxy request failed: {exc}") from exc
        except ValueError as exc:
            raise TransferEngineError("RGB proxy returned a non-JSON response") from exc

        if body.get("error"):
            message = body["error"].get("message", "unknown error")
            raise TransferEngineError(f"RGB proxy error: {message}")

        consignment_hex = (body.get("result") or {}).get("consignment")
        if not consignment_hex:
            raise TransferEngineError("RGB proxy response missing consignment")

        try:
            raw = bytes.fromhex(consignment_hex)
        except ValueError as exc:
            raise TransferEngineError("RGB proxy consignment is not valid hex") from exc

        logger.info("rgb_consignment_generated", invoice_id=invoice_id, size_bytes=len(raw))
        return base64.b64encode(raw).decode("ascii")

    async def close(self) -> None:
        await self._client.aclose()


class MockTransferEngine:
    """Deterministic placeholder consignments for development and tests."""

    def __init__(self, contract_id: str = "rgb:mock-contract") -> None:
        self.contract_id = contract_id
        self._failures_pending = 0
        self.calls = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise TransferEngineError."""
        self._failures_pending += count

    async def generate_consignment(
        self, rgb_invoice: str, token_amount: int, invoice_id: str
    ) -> str:
        self.calls += 1
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise TransferEngineError("mock transfer failure")

        try:
            recipient = blinded_utxo(rgb_invoice)
        except ValueError as exc:
            raise TransferEngineError(str(exc)) from exc

        digest = hashlib.sha256(
            f"{self.contract_id}:{recipient}:{token_amount}:{invoice_id}".encode()
        ).digest()
        return base64.b64encode(b"RGBC" + digest).decode("ascii")

    async def close(self) -> None:
        return None


def decode_consignment(artifact: str) -> bytes:
    """Decode a stored base64 consignment for download."""
    try:
        return base64.b64decode(artifact, validate=True)
    except binascii.Error as exc:
        raise TransferEngineError("Stored consignment is not valid base64") from exc
