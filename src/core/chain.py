"""Chain interaction helpers"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .constants import DEFAULT_REQUEST_TIMEOUT
from .errors import ChainProviderError
from .log import get_logger
from .schemas import BlockInfo

logger = get_logger(__name__)


class ChainHeightProvider(Protocol):
    """Source of confirmed block heights and block summaries."""

    async def get_current_height(self) -> int: ...

    async def get_block(self, height: int) -> BlockInfo: ...


class EsploraChainProvider:
    """
    Esplora REST client (blockstream.info, mempool.space and self-hosted
    electrs all expose the same routes).

    Every request carries a timeout; any transport, HTTP or payload error is
    raised as ``ChainProviderError`` so callers can treat it as transient.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        bearer_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {bearer_token}"} if bearer_token else {}
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=headers,
        )

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover
            logger.debug("Error closing chain client: %s", exc)

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChainProviderError(
                f"Esplora returned {exc.response.status_code} for {path}"
            ) from exc
        except httpx.RequestError as exc:
            raise ChainProviderError(f"Esplora request {path} failed: {exc}") from exc
        return response

    async def get_current_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as exc:
            raise ChainProviderError(
                f"Unexpected tip height payload: {response.text!r}"
            ) from exc

    async def get_block(self, height: int) -> BlockInfo:
        hash_response = await self._get(f"/block-height/{height}")
        block_hash = hash_response.text.strip()

        block_response = await self._get(f"/block/{block_hash}")
        try:
            payload = block_response.json()
        except ValueError as exc:
            raise ChainProviderError(
                f"Failed to decode block {block_hash} payload: {exc}"
            ) from exc

        extras = payload.get("extras") or {}
        try:
            block = BlockInfo(
                height=payload.get("height", height),
                hash=payload.get("id", block_hash),
                timestamp=payload.get("timestamp"),
                tx_count=payload.get("tx_count"),
                total_fees=extras.get("totalFees", extras.get("total_fees")),
                median_fee=extras.get("medianFee", extras.get("median_fee")),
            )
        except ValidationError as exc:
            raise ChainProviderError(f"Invalid block payload at {height}: {exc}") from exc

        if block.height != height:
            raise ChainProviderError(
                f"Requested block {height} but provider returned {block.height}"
            )
        logger.trace("Fetched block %s (%s)", height, block.hash)
        return block
