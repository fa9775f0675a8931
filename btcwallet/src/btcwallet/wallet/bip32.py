"""
BIP32 HD key derivation.
Implements BIP84 (Native SegWit) account derivation.
"""

from __future__ import annotations

import hashlib
import hmac
import unicodedata
from dataclasses import dataclass, field

from btccore.constants import BIP84_PURPOSE, HARDENED_OFFSET
from btccore.errors import DerivationError
from btccore.models import NetworkType, get_network_params
from coincurve import PrivateKey

from btcwallet.wallet.models import Account

# secp256k1 curve order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

MIN_SEED_BYTES = 16
MAX_SEED_BYTES = 64


def parse_path(path: str) -> list[int]:
    """
    Child indexes of a path such as "m/84'/0'/0'/0/0".
    Both ' and h mark a hardened step.
    """
    parts = path.split("/")
    if parts[0] != "m":
        raise DerivationError(f"Path must start with 'm': {path!r}")

    indexes: list[int] = []
    for part in parts[1:]:
        hardened = part[-1:] in ("'", "h")
        digits = part[:-1] if hardened else part
        if not (digits.isascii() and digits.isdigit()):
            raise DerivationError(f"Malformed path component {part!r} in {path!r}")
        if int(digits) >= HARDENED_OFFSET:
            raise DerivationError(f"Path component out of range: {part!r}")
        indexes.append(int(digits) + (HARDENED_OFFSET if hardened else 0))
    return indexes


def _split_hmac(key: bytes, data: bytes) -> tuple[int, bytes]:
    digest = hmac.new(key, data, hashlib.sha512).digest()
    return int.from_bytes(digest[:32], "big"), digest[32:]


@dataclass(frozen=True)
class HDKey:
    """BIP32 extended private key. Only private (xprv) derivation is supported."""

    secret: bytes = field(repr=False)
    chain_code: bytes = field(repr=False)
    depth: int = 0

    @property
    def private_key(self) -> PrivateKey:
        return PrivateKey(self.secret)

    @property
    def public_key(self) -> bytes:
        """Compressed SEC1 public key"""
        return self.private_key.public_key.format(compressed=True)

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        if not isinstance(seed, (bytes, bytearray)):
            raise DerivationError(f"Seed must be bytes, got {type(seed).__name__}")
        if not MIN_SEED_BYTES <= len(seed) <= MAX_SEED_BYTES:
            raise DerivationError(
                f"Seed must be {MIN_SEED_BYTES}-{MAX_SEED_BYTES} bytes, got {len(seed)}"
            )

        master, chain_code = _split_hmac(b"Bitcoin seed", bytes(seed))
        if not 0 < master < SECP256K1_N:
            raise DerivationError("Seed produces an invalid master key")
        return cls(master.to_bytes(32, "big"), chain_code)

    def child(self, index: int) -> HDKey:
        if index >= HARDENED_OFFSET:
            # Hardened children only ever come from private material
            data = b"\x00" + self.secret
        else:
            data = self.public_key
        tweak, chain_code = _split_hmac(self.chain_code, data + index.to_bytes(4, "big"))

        child = (int.from_bytes(self.secret, "big") + tweak) % SECP256K1_N
        if tweak >= SECP256K1_N or child == 0:
            raise DerivationError(f"Invalid child key at index {index}")
        return HDKey(child.to_bytes(32, "big"), chain_code, self.depth + 1)

    def derive(self, path: str) -> HDKey:
        key = self
        for index in parse_path(path):
            key = key.child(index)
        return key


def mnemonic_to_seed(mnemonic: str | list[str], passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.

    Accepts either a space separated phrase or a list of words. The checksum
    word is not validated against the wordlist.
    """
    if isinstance(mnemonic, (list, tuple)):
        mnemonic = " ".join(mnemonic)

    words = mnemonic.split() if isinstance(mnemonic, str) else []
    if not words:
        raise DerivationError("Mnemonic is empty")

    normalized = unicodedata.normalize("NFKD", " ".join(words))
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase)

    return hashlib.pbkdf2_hmac(
        "sha512", normalized.encode("utf-8"), salt.encode("utf-8"), 2048, dklen=64
    )


def derivation_path(
    purpose: int, coin_type: int, account: int, chain: int = 0, index: int = 0
) -> str:
    """BIP44-style path: hardened purpose/coin/account, plain chain/index."""
    for name, value in (
        ("purpose", purpose),
        ("coin_type", coin_type),
        ("account", account),
        ("chain", chain),
        ("index", index),
    ):
        if not isinstance(value, int) or not 0 <= value < HARDENED_OFFSET:
            raise DerivationError(f"{name} out of range: {value!r}")

    return f"m/{purpose}'/{coin_type}'/{account}'/{chain}/{index}"


def derive_account(
    seed: bytes,
    network: NetworkType | str = NetworkType.MAINNET,
    purpose: int = BIP84_PURPOSE,
    coin_type: int | None = None,
    account: int = 0,
    chain: int = 0,
    index: int = 0,
) -> Account:
    """
    Derive a single-key P2WPKH account.

    coin_type defaults to the network's BIP44 coin type (0 mainnet, 1 test
    networks). The result is a pure function of the seed and the path.
    """
    from btcwallet.wallet.address import pubkey_to_p2wpkh_address, pubkey_to_p2wpkh_script

    params = get_network_params(network)
    if coin_type is None:
        coin_type = params.coin_type

    path = derivation_path(purpose, coin_type, account, chain, index)
    key = HDKey.from_seed(seed).derive(path)
    pubkey = key.public_key

    return Account(
        path=path,
        public_key=pubkey,
        private_key=key.secret,
        script=pubkey_to_p2wpkh_script(pubkey),
        address=pubkey_to_p2wpkh_address(pubkey, network),
        network=NetworkType(network),
    )
