"""
Bitcoin transaction serialization and signature hashing.

Covers the raw transaction format (legacy and segwit), txid computation,
BIP143 sighash for P2WPKH inputs and legacy sighash for P2SH inputs.
"""

from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass, field

from btccore.constants import SEQUENCE_FINAL, SIGHASH_ALL, TX_VERSION
from btccore.errors import WalletError
from coincurve import PrivateKey, PublicKey

from btcwallet.wallet.address import hash160
from btcwallet.wallet.script import p2pkh_script


class TransactionError(WalletError):
    pass


@dataclass
class TxInput:
    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        """Serialized outpoint: txid (little-endian) + vout"""
        return bytes.fromhex(self.txid)[::-1] + self.vout.to_bytes(4, "little")


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return self.value.to_bytes(8, "little") + encode_varint(len(self.script)) + self.script


@dataclass
class Transaction:
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Serialize transaction to bytes (BIP144 format when witnesses are present)."""
        segwit = include_witness and self.has_witness

        result = self.version.to_bytes(4, "little")
        if segwit:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.outpoint
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += inp.sequence.to_bytes(4, "little")

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += self.locktime.to_bytes(4, "little")
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in display order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def vsize(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        weight = base_size * 3 + total_size
        return (weight + 3) // 4

    def copy(self) -> Transaction:
        return copy.deepcopy(self)


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = _read(data, offset, 1)[0]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(_read(data, offset, 2), "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(_read(data, offset, 4), "little"), offset + 4
    return int.from_bytes(_read(data, offset, 8), "little"), offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _read(data: bytes, offset: int, length: int) -> bytes:
    if offset + length > len(data):
        raise TransactionError(f"Unexpected end of data at offset {offset}")
    return data[offset : offset + length]


def deserialize_transaction(tx_bytes: bytes, allow_witness: bool = True) -> Transaction:
    """
    Parse a raw transaction.

    With allow_witness=False the segwit marker is never recognized, so a
    transaction without inputs is not mistaken for an extended encoding.
    """
    offset = 0
    version = int.from_bytes(_read(tx_bytes, offset, 4), "little")
    offset += 4

    segwit = False
    if (
        allow_witness
        and len(tx_bytes) > offset + 1
        and tx_bytes[offset] == 0x00
        and tx_bytes[offset + 1] == 0x01
    ):
        segwit = True
        offset += 2

    input_count, offset = read_varint(tx_bytes, offset)
    inputs: list[TxInput] = []

    for _ in range(input_count):
        txid = _read(tx_bytes, offset, 32)[::-1].hex()
        offset += 32

        vout = int.from_bytes(_read(tx_bytes, offset, 4), "little")
        offset += 4

        script_len, offset = read_varint(tx_bytes, offset)
        script_sig = _read(tx_bytes, offset, script_len)
        offset += script_len

        sequence = int.from_bytes(_read(tx_bytes, offset, 4), "little")
        offset += 4

        inputs.append(TxInput(txid, vout, script_sig, sequence))

    output_count, offset = read_varint(tx_bytes, offset)
    outputs: list[TxOutput] = []

    for _ in range(output_count):
        value = int.from_bytes(_read(tx_bytes, offset, 8), "little")
        offset += 8

        script_len, offset = read_varint(tx_bytes, offset)
        script = _read(tx_bytes, offset, script_len)
        offset += script_len

        outputs.append(TxOutput(value, script))

    if segwit:
        for inp in inputs:
            stack_count, offset = read_varint(tx_bytes, offset)
            for _ in range(stack_count):
                item_len, offset = read_varint(tx_bytes, offset)
                inp.witness.append(_read(tx_bytes, offset, item_len))
                offset += item_len

    locktime = int.from_bytes(_read(tx_bytes, offset, 4), "little")
    offset += 4

    if offset != len(tx_bytes):
        raise TransactionError(f"Trailing data after transaction: {len(tx_bytes) - offset} bytes")

    return Transaction(inputs=inputs, outputs=outputs, version=version, locktime=locktime)


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash (SIGHASH_ALL only)."""
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")

    hash_prevouts = hash256(b"".join(inp.outpoint for inp in tx.inputs))
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target_input.outpoint
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    Pre-segwit signature hash (SIGHASH_ALL only).

    Every scriptSig is blanked except the one being signed, which carries
    the script code (the redeem script for P2SH).
    """
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")

    stripped = Transaction(
        inputs=[
            TxInput(
                txid=inp.txid,
                vout=inp.vout,
                script_sig=script_code if i == input_index else b"",
                sequence=inp.sequence,
            )
            for i, inp in enumerate(tx.inputs)
        ],
        outputs=list(tx.outputs),
        version=tx.version,
        locktime=tx.locktime,
    )

    preimage = stripped.serialize(include_witness=False) + sighash_type.to_bytes(4, "little")
    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """BIP143 scriptCode of a P2WPKH input: the matching P2PKH script, unprefixed."""
    return p2pkh_script(hash160(pubkey_bytes))


def sign_sighash(private_key: PrivateKey, sighash: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
    """
    Sign a precomputed sighash.

    Returns the DER signature with the sighash type byte appended. coincurve
    uses RFC 6979 nonces, so the result is deterministic.
    """
    # sighash is already SHA256d, hasher=None skips hashing
    return private_key.sign(sighash, hasher=None) + bytes([sighash_type])


def verify_sighash_signature(pubkey: bytes, signature: bytes, sighash: bytes) -> bool:
    """Check a DER+sighash-type signature against a sighash."""
    try:
        return PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)
    except ValueError:
        return False


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]
