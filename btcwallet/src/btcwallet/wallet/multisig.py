"""
P2SH m-of-n multisig wallets.

Public keys are sorted lexicographically by their compressed encoding
before the redeem script is built, so every participant that assembles
the wallet from the same key set and threshold gets the same script and
address regardless of the order the keys were exchanged in.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from btccore.constants import MAX_MULTISIG_KEYS
from btccore.errors import InvalidKeyError
from btccore.models import NetworkType
from coincurve import PublicKey

from btcwallet.wallet.address import script_to_p2sh_address, script_to_p2sh_scriptpubkey
from btcwallet.wallet.models import SpendingContext, SpendKind
from btcwallet.wallet.script import build_multisig_script


def _normalize_pubkey(pubkey: bytes | str) -> bytes:
    try:
        raw = bytes.fromhex(pubkey) if isinstance(pubkey, str) else bytes(pubkey)
    except ValueError as e:
        raise InvalidKeyError(f"Public key is not valid hex: {pubkey!r}") from e

    if len(raw) != 33:
        raise InvalidKeyError(f"Expected a 33-byte compressed public key, got {len(raw)} bytes")
    try:
        PublicKey(raw)
    except ValueError as e:
        raise InvalidKeyError(f"Public key {raw.hex()} is not on the curve") from e
    return raw


@dataclass(frozen=True)
class MultisigWallet:
    public_keys: tuple[bytes, ...]
    threshold: int
    redeem_script: bytes
    script_pubkey: bytes
    address: str
    network: NetworkType = NetworkType.MAINNET

    @classmethod
    def create(
        cls,
        public_keys: Iterable[bytes | str],
        threshold: int,
        network: NetworkType | str = NetworkType.MAINNET,
    ) -> MultisigWallet:
        """
        Build a wallet from participant public keys and a threshold.

        Raises:
            InvalidKeyError: malformed or duplicate keys, or an impossible threshold
        """
        keys = sorted(_normalize_pubkey(pk) for pk in public_keys)

        if not keys:
            raise InvalidKeyError("Multisig wallet needs at least one public key")
        if len(keys) > MAX_MULTISIG_KEYS:
            raise InvalidKeyError(
                f"P2SH multisig supports at most {MAX_MULTISIG_KEYS} keys, got {len(keys)}"
            )
        if len(set(keys)) != len(keys):
            raise InvalidKeyError("Duplicate public keys in multisig key set")
        if not 1 <= threshold <= len(keys):
            raise InvalidKeyError(f"Threshold {threshold} is invalid for {len(keys)} keys")

        redeem_script = build_multisig_script(threshold, keys)
        return cls(
            public_keys=tuple(keys),
            threshold=threshold,
            redeem_script=redeem_script,
            script_pubkey=script_to_p2sh_scriptpubkey(redeem_script),
            address=script_to_p2sh_address(redeem_script, network),
            network=NetworkType(network),
        )

    @property
    def description(self) -> str:
        return f"{self.threshold}-of-{len(self.public_keys)}"

    def spending_context(self, previous_transactions: Mapping[str, bytes]) -> SpendingContext:
        """Context for spending this wallet's UTXOs; needs every spent previous tx."""
        return SpendingContext(
            kind=SpendKind.P2SH_MULTISIG,
            script_pubkey=self.script_pubkey,
            redeem_script=self.redeem_script,
            previous_transactions=dict(previous_transactions),
        )
