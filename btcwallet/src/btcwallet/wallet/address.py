"""
Bitcoin address generation and decoding.
"""

from __future__ import annotations

import hashlib

import base58
import bech32
from btccore.errors import InvalidAddressError
from btccore.models import NetworkType, get_network_params

from btcwallet.wallet.script import p2pkh_script, p2sh_script, p2wpkh_script


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def _as_bytes(pubkey: bytes | str) -> bytes:
    return bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey


def pubkey_to_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return p2wpkh_script(hash160(_as_bytes(pubkey)))


def pubkey_to_p2wpkh_address(pubkey: bytes | str, network: NetworkType | str = "mainnet") -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    pubkey_bytes = _as_bytes(pubkey)

    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")

    hrp = get_network_params(network).bech32_hrp
    address = bech32.encode(hrp, 0, hash160(pubkey_bytes))
    if address is None:
        raise ValueError(f"Failed to encode P2WPKH address for {pubkey_bytes.hex()}")
    return address


def script_to_p2sh_scriptpubkey(redeem_script: bytes) -> bytes:
    """Create P2SH scriptPubKey (OP_HASH160 <hash160(script)> OP_EQUAL)"""
    return p2sh_script(hash160(redeem_script))


def script_to_p2sh_address(redeem_script: bytes, network: NetworkType | str = "mainnet") -> str:
    """Base58Check P2SH address for a redeem script"""
    version = get_network_params(network).p2sh_version
    payload = bytes([version]) + hash160(redeem_script)
    return base58.b58encode_check(payload).decode("ascii")


def address_to_scriptpubkey(address: str, network: NetworkType | str | None = None) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bc1q..., tb1q..., bcrt1q...)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Taproot (bc1p..., tb1p...) addresses use bech32m, which the bech32
    package does not decode, and are rejected. When a network is given the
    address must belong to it.
    """
    params = get_network_params(network) if network is not None else None
    lowered = address.lower()

    # Bech32 (SegWit) addresses
    for hrp in ("bcrt", "bc", "tb"):
        if not lowered.startswith(hrp + "1"):
            continue

        if params is not None and hrp != params.bech32_hrp:
            raise InvalidAddressError(
                f"Address {address} is not valid on {NetworkType(network).value}"
            )

        if lowered[len(hrp) + 1 : len(hrp) + 2] == "p":
            raise InvalidAddressError(f"Taproot addresses are not supported: {address}")

        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise InvalidAddressError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            return bytes([0x00, len(program)]) + program

        raise InvalidAddressError(f"Unsupported witness version {witver} in {address}")

    # Base58 addresses (legacy)
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise InvalidAddressError(f"Invalid address payload length: {address}")

    version, payload = decoded[0], decoded[1:]
    if params is not None:
        candidates = [params]
    else:
        candidates = [
            get_network_params(NetworkType.MAINNET),
            get_network_params(NetworkType.TESTNET),
        ]

    for candidate in candidates:
        if version == candidate.p2pkh_version:
            return p2pkh_script(payload)
        if version == candidate.p2sh_version:
            return p2sh_script(payload)

    raise InvalidAddressError(f"Unknown address version {version} for {address}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str = "mainnet") -> str:
    """Convert scriptPubKey back to an address (P2WPKH, P2WSH, P2PKH, P2SH)."""
    params = get_network_params(network)

    # P2WPKH / P2WSH
    if (
        len(scriptpubkey) in (22, 34)
        and scriptpubkey[0] == 0x00
        and scriptpubkey[1] == len(scriptpubkey) - 2
    ):
        result = bech32.encode(params.bech32_hrp, 0, scriptpubkey[2:])
        if result is None:
            raise InvalidAddressError(f"Failed to encode segwit address: {scriptpubkey.hex()}")
        return result

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == b"\x76\xa9\x14"
        and scriptpubkey[23:] == b"\x88\xac"
    ):
        payload = bytes([params.p2pkh_version]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == b"\xa9\x14" and scriptpubkey[22] == 0x87:
        payload = bytes([params.p2sh_version]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    raise InvalidAddressError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")
