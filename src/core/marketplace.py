"""
Client for the UniSat inscription order API.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from .constants import DEFAULT_REQUEST_TIMEOUT, DUST_OUTPUT_VALUE
from .errors import MarketplaceError
from .log import get_logger
from .schemas import InscriptionPayload, MarketplaceOrder, MarketplaceOrderStatus

logger = get_logger(__name__)


class Marketplace(Protocol):
    """Inscription order service."""

    async def create_order(
        self, payload: InscriptionPayload, filename: str, receive_address: str
    ) -> MarketplaceOrder: ...

    async def get_order_status(self, order_id: str) -> MarketplaceOrderStatus: ...


def serialize_payload(payload: InscriptionPayload) -> str:
    """JSON document that ends up inscribed on-chain."""
    return json.dumps(payload.model_dump(exclude_none=True), indent=2)


def encode_payload_data_url(payload: InscriptionPayload) -> str:
    """Serialize ``payload`` as the base64 JSON data URL the API expects."""
    document = serialize_payload(payload)
    encoded = base64.b64encode(document.encode("utf-8")).decode("ascii")
    return f"data:application/json;base64,{encoded}"


class UnisatMarketplace:
    """
    Thin async wrapper around ``/v2/inscribe/order``.

    Responses use the ``{code, msg, data}`` envelope; a non-zero ``code`` or
    any transport failure raises ``MarketplaceError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        fee_rate: int,
        output_value: int = DUST_OUTPUT_VALUE,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise MarketplaceError("A marketplace API key is required")
        self.base_url = base_url.rstrip("/")
        self.fee_rate = fee_rate
        self.output_value = output_value
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover
            logger.debug("Error closing marketplace client: %s", exc)

    async def _request(
        self, method: str, path: str, body: Optional[dict] = None
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MarketplaceError(
                f"Marketplace returned {exc.response.status_code} for {path}: "
                f"{exc.response.text}"
            ) from exc
        except httpx.RequestError as exc:
            raise MarketplaceError(f"Marketplace request {path} failed: {exc}") from exc

        try:
            envelope = response.json()
        except ValueError as exc:
            raise MarketplaceError(f"Invalid JSON from marketplace: {exc}") from exc

        if not isinstance(envelope, dict):
            raise MarketplaceError(f"Unexpected marketplace envelope: {envelope!r}")
        if envelope.get("code") != 0:
            raise MarketplaceError(
                f"Marketplace error {envelope.get('code')}: {envelope.get('msg')}"
            )
        return envelope.get("data")

    async def create_order(
        self, payload: InscriptionPayload, filename: str, receive_address: str
    ) -> MarketplaceOrder:
        body = {
            "receiveAddress": receive_address,
            "feeRate": self.fee_rate,
            "outputValue": self.output_value,
            "files": [
                {"filename": filename, "dataURL": encode_payload_data_url(payload)}
            ],
        }
        data = await self._request("POST", "/v2/inscribe/order/create", body)
        try:
            order = MarketplaceOrder.model_validate(data)
        except ValidationError as exc:
            raise MarketplaceError(f"Unexpected order payload: {exc}") from exc

        logger.info(
            "Marketplace order %s created: %s sats to %s",
            order.order_id,
            order.amount,
            order.pay_address,
        )
        return order

    async def get_order_status(self, order_id: str) -> MarketplaceOrderStatus:
        data = await self._request("GET", f"/v2/inscribe/order/{order_id}")
        try:
            return MarketplaceOrderStatus.model_validate(data)
        except ValidationError as exc:
            raise MarketplaceError(
                f"Unexpected status payload for order {order_id}: {exc}"
            ) from exc
