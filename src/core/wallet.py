"""
Platform funding wallet backed by a Bitcoin Core wallet over JSON-RPC.

Key material never leaves the node: balance, UTXOs and payments are all
delegated to ``bitcoind``.
"""

from __future__ import annotations

import itertools
from decimal import Decimal
from typing import Any, List, Optional, Protocol

import httpx

from .constants import DEFAULT_REQUEST_TIMEOUT, SATS_PER_BTC
from .errors import WalletError
from .log import get_logger
from .schemas import Utxo

logger = get_logger(__name__)


class Wallet(Protocol):
    async def get_address(self) -> str: ...

    async def get_balance(self) -> int: ...

    async def get_utxos(self) -> List[Utxo]: ...

    async def send_payment(self, to_address: str, amount: int, fee_rate: int) -> str: ...


def sats_to_btc(amount: int) -> Decimal:
    return (Decimal(amount) / SATS_PER_BTC).quantize(Decimal("0.00000001"))


def btc_to_sats(amount: Any) -> int:
    return int((Decimal(str(amount)) * SATS_PER_BTC).to_integral_value())


class BitcoinRpcWallet:
    """Minimal async JSON-RPC client for a loaded ``bitcoind`` wallet."""

    def __init__(
        self,
        rpc_url: str,
        rpc_user: str,
        rpc_password: str,
        address: Optional[str] = None,
        min_confirmations: int = 1,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.min_confirmations = min_confirmations
        self._address = address
        self._ids = itertools.count(1)
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            auth=(rpc_user, rpc_password),
        )

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover
            logger.debug("Error closing wallet client: %s", exc)

    async def _call(self, method: str, *params: Any) -> Any:
        body = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = await self._client.post(self.rpc_url, json=body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            # Request never reached the node
            raise WalletError(f"Wallet RPC {method} failed: {exc}") from exc
        except httpx.RequestError as exc:
            raise WalletError(
                f"Wallet RPC {method} failed: {exc!r}", ambiguous=True
            ) from exc

        # bitcoind answers RPC errors with HTTP 500 and a JSON error body;
        # anything else gives no proof the call was rejected
        try:
            payload = response.json()
        except ValueError as exc:
            raise WalletError(
                f"Wallet RPC {method} returned {response.status_code}: {response.text}",
                ambiguous=True,
            ) from exc
        if not isinstance(payload, dict):
            raise WalletError(
                f"Wallet RPC {method} returned unexpected payload: {payload!r}",
                ambiguous=True,
            )

        error = payload.get("error")
        if error:
            raise WalletError(f"Wallet RPC {method} error: {error}")
        if response.status_code >= 400:
            raise WalletError(
                f"Wallet RPC {method} returned {response.status_code}",
                ambiguous=True,
            )
        return payload.get("result")

    async def get_address(self) -> str:
        if not self._address:
            self._address = await self._call("getnewaddress", "inscriber", "bech32m")
        return self._address

    async def get_balance(self) -> int:
        balance = await self._call("getbalance", "*", self.min_confirmations)
        return btc_to_sats(balance)

    async def get_utxos(self) -> List[Utxo]:
        unspent = await self._call("listunspent", self.min_confirmations)
        return [
            Utxo(
                txid=entry["txid"],
                vout=entry["vout"],
                value=btc_to_sats(entry["amount"]),
                confirmed=entry.get("confirmations", 0) > 0,
            )
            for entry in unspent or []
            if entry.get("spendable", True)
        ]

    async def send_payment(self, to_address: str, amount: int, fee_rate: int) -> str:
        """Pay ``amount`` sats to ``to_address`` and return the payment txid."""
        txid = await self._call(
            "sendtoaddress",
            to_address,
            str(sats_to_btc(amount)),
            "inscription order",  # comment
            "",  # comment_to
            False,  # subtractfeefromamount
            True,  # replaceable
            None,  # conf_target
            "unset",  # estimate_mode
            False,  # avoid_reuse
            fee_rate,
        )
        logger.info("Sent %s sats to %s (txid=%s)", amount, to_address, txid)
        return txid
