"""
Wallet data models.

Provider-supplied data (Utxo) and locally derived spending data
(SpendingContext) are kept in separate records and joined by txid/vout.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from btccore.models import NetworkType


@dataclass(frozen=True)
class Account:
    """Single-key BIP84 account. The private key never appears in reprs."""

    path: str
    public_key: bytes
    private_key: bytes = field(repr=False)
    script: bytes
    address: str
    network: NetworkType = NetworkType.MAINNET

    def spending_context(self) -> SpendingContext:
        return SpendingContext(kind=SpendKind.P2WPKH, script_pubkey=self.script)


@dataclass(frozen=True)
class Utxo:
    """Unspent output as reported by the data provider"""

    txid: str
    vout: int
    value: int
    address: str = ""
    confirmed: bool = True
    block_height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class SpendKind(str, Enum):
    P2WPKH = "p2wpkh"
    P2SH_MULTISIG = "p2sh-multisig"


@dataclass(frozen=True)
class SpendingContext:
    """
    How the wallet's outputs are unlocked.

    script_pubkey is the locking script of the spending address. For P2SH
    multisig, redeem_script is the shared script and previous_transactions
    maps txid -> raw previous transaction for every selected UTXO.
    """

    kind: SpendKind
    script_pubkey: bytes
    redeem_script: bytes | None = None
    previous_transactions: Mapping[str, bytes] = field(default_factory=dict)

    def previous_transaction(self, utxo: Utxo) -> bytes:
        try:
            return self.previous_transactions[utxo.txid]
        except KeyError:
            raise KeyError(f"No previous transaction for {utxo.outpoint}") from None


@dataclass
class CoinSelection:
    """Result of coin selection"""

    utxos: list[Utxo]
    total_value: int
    fee: int
