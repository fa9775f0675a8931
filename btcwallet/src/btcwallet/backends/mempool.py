"""
mempool.space REST backend.

Endpoints used:
- GET  /address/{address}/utxo
- GET  /v1/fees/recommended
- GET  /tx/{txid}/hex
- POST /tx  (raw hex body, returns the txid as text)
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from btccore.config import WalletSettings
from btccore.errors import NetworkError, RejectedByNodeError
from btccore.models import FeeEstimate
from loguru import logger

from btcwallet.backends.base import BlockchainBackend
from btcwallet.wallet.models import Utxo


def _parse_sats(value: Any) -> int:
    """Satoshi amount from a JSON integer or decimal string, never via float."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid satoshi value: {value!r}")
    if isinstance(value, int):
        amount = value
    else:
        try:
            dec = Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"Invalid satoshi value: {value!r}") from e
        if not dec.is_finite() or dec != dec.to_integral_value():
            raise ValueError(f"Fractional satoshi value: {value!r}")
        amount = int(dec)

    if amount < 0:
        raise ValueError(f"Negative satoshi value: {value!r}")
    return amount


class MempoolBackend(BlockchainBackend):
    """
    Blockchain backend using a mempool.space compatible API.

    The base URL selects the network, e.g. https://mempool.space/testnet4/api.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: WalletSettings) -> MempoolBackend:
        return cls(settings.get_api_url(), timeout=settings.request_timeout)

    async def _request(
        self,
        method: str,
        endpoint: str,
        content: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        """Make an API call. Returns the response body text."""
        url = f"{self.base_url}/{endpoint}"

        try:
            response = await self.client.request(method, url, content=content, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Provider request failed: {method} {endpoint} - {e}")
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if response.is_success:
            return response.text

        if method == "POST" and endpoint == "tx":
            logger.error(f"Broadcast rejected: HTTP {response.status_code} {response.text}")
            raise RejectedByNodeError(response.status_code, response.text)

        logger.error(f"Provider returned HTTP {response.status_code} for {method} {endpoint}")
        raise NetworkError(
            f"{method} {url} failed", status_code=response.status_code, body=response.text
        )

    async def _get_json(self, endpoint: str) -> Any:
        text = await self._request("GET", endpoint)
        try:
            return json.loads(text)
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {endpoint}: {e}") from e

    async def get_utxos(self, address: str) -> list[Utxo]:
        data = await self._get_json(f"address/{address}/utxo")
        if not isinstance(data, list):
            raise NetworkError(f"Unexpected UTXO listing for {address}: {data!r}")

        utxos: list[Utxo] = []
        for entry in data:
            try:
                status = entry.get("status") or {}
                utxos.append(
                    Utxo(
                        txid=str(entry["txid"]),
                        vout=int(entry["vout"]),
                        value=_parse_sats(entry["value"]),
                        address=address,
                        confirmed=bool(status.get("confirmed", True)),
                        block_height=status.get("block_height"),
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise NetworkError(f"Malformed UTXO entry for {address}: {entry!r}") from e

        logger.debug(f"Found {len(utxos)} UTXOs for {address}")
        return utxos

    async def get_fee_rates(self) -> FeeEstimate:
        fees = FeeEstimate.from_mempool(await self._get_json("v1/fees/recommended"))
        logger.debug(f"Fee rates: {fees.model_dump()}")
        return fees

    async def get_transaction_hex(self, txid: str) -> str:
        raw = (await self._request("GET", f"tx/{txid}/hex")).strip()
        try:
            bytes.fromhex(raw)
        except ValueError as e:
            raise NetworkError(f"Provider returned invalid hex for transaction {txid}") from e
        return raw

    async def broadcast_transaction(self, tx_hex: str) -> str:
        raw = await self._request(
            "POST", "tx", content=tx_hex, headers={"content-type": "text/plain"}
        )
        txid = raw.strip()
        logger.info(f"Broadcast accepted: {txid}")
        return txid

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
