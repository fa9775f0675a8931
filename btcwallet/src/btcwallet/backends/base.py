"""
Base blockchain data provider interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from btccore.models import FeeEstimate

from btcwallet.wallet.models import Utxo


class BlockchainBackend(ABC):
    """
    Abstract data provider.

    Every method is a suspend point. No method retries on failure; errors
    surface as NetworkError (or RejectedByNodeError for broadcasts).
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        """Unspent outputs of an address, in provider listing order"""

    @abstractmethod
    async def get_fee_rates(self) -> FeeEstimate:
        """Current recommended fee rates in sat/vbyte"""

    @abstractmethod
    async def get_transaction_hex(self, txid: str) -> str:
        """Raw transaction hex by txid"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    async def get_balance(self, address: str) -> int:
        """Sum of all listed UTXOs of an address, in sats"""
        return sum(utxo.value for utxo in await self.get_utxos(address))

    async def close(self) -> None:
        """Close backend connection"""
        pass
