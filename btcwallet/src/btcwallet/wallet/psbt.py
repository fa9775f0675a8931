"""
BIP174 partially signed Bitcoin transactions (version 0).

A Psbt is the single object that travels between signers. Its lifecycle
stage (TxStage) is derived from its contents and checked before every
mutating operation, so operations that would be silently ignored or would
invalidate existing signatures raise InvalidStateError instead.
"""

from __future__ import annotations

import base64
import binascii
import copy
from dataclasses import dataclass, field
from enum import Enum

from btccore.constants import SIGHASH_ALL
from btccore.errors import InvalidStateError, PsbtError
from loguru import logger

from btcwallet.wallet.address import hash160
from btcwallet.wallet.models import SpendKind
from btcwallet.wallet.script import (
    is_p2sh,
    is_p2wpkh,
    p2pkh_script,
    p2sh_script,
    parse_multisig_script,
)
from btcwallet.wallet.transaction import (
    Transaction,
    TransactionError,
    TxInput,
    TxOutput,
    compute_sighash_legacy,
    compute_sighash_segwit,
    deserialize_transaction,
    encode_varint,
    read_varint,
    verify_sighash_signature,
)

PSBT_MAGIC = b"psbt\xff"

# Global key types
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Input key types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

# Output key types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01


class TxStage(str, Enum):
    DRAFT = "draft"
    PARTIALLY_SIGNED = "partially_signed"
    READY_TO_FINALIZE = "ready_to_finalize"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class SignatureRequirement:
    """Who has to sign an input and how many signatures it needs."""

    kind: SpendKind
    required: int
    # Multisig: participant keys in redeem script order. P2WPKH: empty.
    signers: tuple[bytes, ...] = ()
    # P2WPKH: hash160 of the only key that can sign
    pubkey_hash: bytes | None = None

    def accepts(self, pubkey: bytes) -> bool:
        if self.kind == SpendKind.P2WPKH:
            return hash160(pubkey) == self.pubkey_hash
        return pubkey in self.signers


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None


@dataclass
class PsbtOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)


class Psbt:
    """Partially signed transaction: an unsigned tx plus per-input signing data."""

    def __init__(self, tx: Transaction | None = None):
        self.tx = tx if tx is not None else Transaction()
        self.inputs: list[PsbtInput] = [PsbtInput() for _ in self.tx.inputs]
        self.outputs: list[PsbtOutput] = [PsbtOutput() for _ in self.tx.outputs]
        self.unknown: dict[bytes, bytes] = {}

    def __repr__(self) -> str:
        return (
            f"Psbt(txid={self.tx.txid[:16]}..., inputs={len(self.inputs)}, "
            f"outputs={len(self.outputs)}, stage={self.stage.value})"
        )

    # Construction

    def add_input(
        self,
        txid: str,
        vout: int,
        *,
        witness_utxo: TxOutput | None = None,
        non_witness_utxo: bytes | None = None,
        redeem_script: bytes | None = None,
        sequence: int = 0xFFFFFFFF,
    ) -> int:
        """Append an input. Returns its index."""
        self._require_stage(TxStage.DRAFT, action="add an input")

        try:
            valid_txid = len(bytes.fromhex(txid)) == 32
        except ValueError:
            valid_txid = False
        if not valid_txid:
            raise PsbtError(f"Invalid txid: {txid}")
        if witness_utxo is None and non_witness_utxo is None:
            raise PsbtError(f"Input {txid}:{vout} needs the spent output or its transaction")

        if non_witness_utxo is not None:
            prev_tx = self._parse_prev_tx(non_witness_utxo)
            if prev_tx.txid != txid:
                raise PsbtError(f"Previous transaction {prev_tx.txid} does not match {txid}")
            if vout >= len(prev_tx.outputs):
                raise PsbtError(f"Previous transaction {txid} has no output {vout}")

        self.tx.inputs.append(TxInput(txid=txid, vout=vout, sequence=sequence))
        self.inputs.append(
            PsbtInput(
                non_witness_utxo=non_witness_utxo,
                witness_utxo=witness_utxo,
                redeem_script=redeem_script,
            )
        )
        return len(self.inputs) - 1

    def add_output(self, script: bytes, value: int) -> int:
        """Append an output. Returns its index."""
        self._require_stage(TxStage.DRAFT, action="add an output")

        if value < 0:
            raise PsbtError(f"Negative output value: {value}")

        self.tx.outputs.append(TxOutput(value=value, script=script))
        self.outputs.append(PsbtOutput())
        return len(self.outputs) - 1

    # Inspection

    def spent_output(self, index: int) -> TxOutput:
        """The previous output spent by input `index`."""
        psbt_input = self.inputs[index]
        tx_input = self.tx.inputs[index]

        if psbt_input.witness_utxo is not None:
            return psbt_input.witness_utxo

        if psbt_input.non_witness_utxo is not None:
            prev_tx = self._parse_prev_tx(psbt_input.non_witness_utxo)
            if prev_tx.txid != tx_input.txid:
                raise PsbtError(
                    f"Input {index}: previous transaction {prev_tx.txid} "
                    f"does not match {tx_input.txid}"
                )
            if tx_input.vout >= len(prev_tx.outputs):
                raise PsbtError(
                    f"Input {index}: previous transaction has no output {tx_input.vout}"
                )
            return prev_tx.outputs[tx_input.vout]

        raise PsbtError(f"Input {index} has no UTXO information")

    def requirement(self, index: int) -> SignatureRequirement:
        """Spending condition of input `index`."""
        psbt_input = self.inputs[index]
        script = self.spent_output(index).script

        if is_p2wpkh(script):
            return SignatureRequirement(
                kind=SpendKind.P2WPKH, required=1, pubkey_hash=script[2:]
            )

        if is_p2sh(script) and psbt_input.redeem_script is not None:
            if p2sh_script(hash160(psbt_input.redeem_script)) != script:
                raise PsbtError(f"Input {index}: redeem script does not match spent output")
            parsed = parse_multisig_script(psbt_input.redeem_script)
            if parsed is not None:
                threshold, pubkeys = parsed
                return SignatureRequirement(
                    kind=SpendKind.P2SH_MULTISIG, required=threshold, signers=tuple(pubkeys)
                )

        raise PsbtError(f"Input {index}: unsupported spending script {script.hex()}")

    @property
    def stage(self) -> TxStage:
        if not self.inputs:
            return TxStage.DRAFT

        if all(inp.is_finalized for inp in self.inputs):
            return TxStage.FINALIZED

        ready = True
        any_signed = False
        for i, inp in enumerate(self.inputs):
            if inp.is_finalized:
                any_signed = True
                continue
            try:
                requirement = self.requirement(i)
            except PsbtError:
                # Unsupported inputs can never reach their threshold
                ready = False
                any_signed = any_signed or bool(inp.partial_sigs)
                continue

            present = len(self.signers_present(i, requirement))
            any_signed = any_signed or present > 0
            if present < requirement.required:
                ready = False

        if ready:
            return TxStage.READY_TO_FINALIZE
        if any_signed:
            return TxStage.PARTIALLY_SIGNED
        return TxStage.DRAFT

    def signers_present(
        self, index: int, requirement: SignatureRequirement | None = None
    ) -> list[bytes]:
        """
        Keys holding a partial signature on input `index` that its spending
        condition accepts. Multisig keys come back in redeem script order.
        Signatures under any other key never count towards the threshold.
        """
        if requirement is None:
            requirement = self.requirement(index)
        partial_sigs = self.inputs[index].partial_sigs

        if requirement.kind == SpendKind.P2WPKH:
            return [pk for pk in partial_sigs if requirement.accepts(pk)]
        return [pk for pk in requirement.signers if pk in partial_sigs]

    def signature_hash(self, index: int) -> bytes:
        """SIGHASH_ALL digest the signatures of input `index` commit to."""
        requirement = self.requirement(index)

        if requirement.kind == SpendKind.P2WPKH:
            script_code = p2pkh_script(requirement.pubkey_hash or b"")
            return compute_sighash_segwit(
                self.tx, index, script_code, self.spent_output(index).value, SIGHASH_ALL
            )

        # Legacy P2SH sighash commits to the redeem script
        return compute_sighash_legacy(
            self.tx, index, self.inputs[index].redeem_script or b"", SIGHASH_ALL
        )

    def check_signature(self, index: int, pubkey: bytes, sighash: bytes | None = None) -> None:
        """
        Raise PsbtError unless input `index` holds a valid SIGHASH_ALL
        signature by `pubkey`, a key its spending condition accepts.
        """
        if not self.requirement(index).accepts(pubkey):
            raise PsbtError(f"Input {index}: {pubkey.hex()} is not a signer of this input")

        signature = self.inputs[index].partial_sigs.get(pubkey, b"")
        if signature[-1:] != bytes([SIGHASH_ALL]):
            raise PsbtError(f"Input {index}: signature by {pubkey.hex()} is not SIGHASH_ALL")

        if sighash is None:
            sighash = self.signature_hash(index)
        if not verify_sighash_signature(pubkey, signature, sighash):
            raise PsbtError(f"Input {index}: invalid signature by {pubkey.hex()}")

    def input_total(self) -> int:
        return sum(self.spent_output(i).value for i in range(len(self.inputs)))

    def output_total(self) -> int:
        return sum(out.value for out in self.tx.outputs)

    @property
    def fee(self) -> int:
        return self.input_total() - self.output_total()

    def extract_transaction(self) -> Transaction:
        """Network transaction with final scriptSigs and witnesses."""
        self._require_stage(TxStage.FINALIZED, action="extract the transaction")

        tx = self.tx.copy()
        for tx_input, psbt_input in zip(tx.inputs, self.inputs):
            tx_input.script_sig = psbt_input.final_script_sig or b""
            tx_input.witness = list(psbt_input.final_script_witness or [])
        return tx

    def copy(self) -> Psbt:
        return copy.deepcopy(self)

    def _require_stage(self, *allowed: TxStage, action: str) -> None:
        current = self.stage
        if current not in allowed:
            raise InvalidStateError(
                f"Cannot {action} at stage {current.value} "
                f"(allowed: {', '.join(s.value for s in allowed)})"
            )

    def _reject_foreign_signers(self, index: int) -> None:
        psbt_input = self.inputs[index]
        if psbt_input.is_finalized or not psbt_input.partial_sigs:
            return
        try:
            requirement = self.requirement(index)
        except PsbtError:
            # Spending condition unknown, nothing to check the keys against
            return

        for pubkey in psbt_input.partial_sigs:
            if not requirement.accepts(pubkey):
                raise PsbtError(
                    f"Input {index} carries a signature by {pubkey.hex()}, "
                    f"which is not a signer of that input"
                )

    @staticmethod
    def _parse_prev_tx(raw: bytes) -> Transaction:
        try:
            return deserialize_transaction(raw)
        except TransactionError as e:
            raise PsbtError(f"Invalid previous transaction: {e}") from e

    # Serialization

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _write_field(
            bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False)
        )
        result += _write_unknown(self.unknown)
        result += b"\x00"

        for inp in self.inputs:
            result += _serialize_input(inp)

        for out in self.outputs:
            if out.redeem_script is not None:
                result += _write_field(bytes([PSBT_OUT_REDEEM_SCRIPT]), out.redeem_script)
            if out.witness_script is not None:
                result += _write_field(bytes([PSBT_OUT_WITNESS_SCRIPT]), out.witness_script)
            result += _write_unknown(out.unknown)
            result += b"\x00"

        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_hex(cls, data: str) -> Psbt:
        try:
            raw = bytes.fromhex(data.strip())
        except ValueError as e:
            raise PsbtError(f"PSBT is not valid hex: {e}") from e
        return cls.deserialize(raw)

    @classmethod
    def from_base64(cls, data: str) -> Psbt:
        try:
            raw = base64.b64decode(data.strip(), validate=True)
        except binascii.Error as e:
            raise PsbtError(f"PSBT is not valid base64: {e}") from e
        return cls.deserialize(raw)

    @classmethod
    def from_string(cls, data: str) -> Psbt:
        """Accept either hex or base64 encoding"""
        data = data.strip()
        if data.startswith("70736274ff"):
            return cls.from_hex(data)
        return cls.from_base64(data)

    @classmethod
    def deserialize(cls, data: bytes) -> Psbt:
        if not data.startswith(PSBT_MAGIC):
            raise PsbtError("Invalid PSBT magic")

        try:
            offset = len(PSBT_MAGIC)
            global_map, offset = _read_map(data, offset)

            unsigned = global_map.pop(bytes([PSBT_GLOBAL_UNSIGNED_TX]), None)
            if unsigned is None:
                raise PsbtError("PSBT has no unsigned transaction")

            tx = deserialize_transaction(unsigned, allow_witness=False)
            if any(inp.script_sig or inp.witness for inp in tx.inputs):
                raise PsbtError("Unsigned transaction carries scriptSigs or witnesses")

            psbt = cls(tx)
            psbt.unknown = global_map

            for i in range(len(tx.inputs)):
                entries, offset = _read_map(data, offset)
                psbt.inputs[i] = _parse_input(entries)

            for i in range(len(tx.outputs)):
                entries, offset = _read_map(data, offset)
                out = PsbtOutput()
                out.redeem_script = entries.pop(bytes([PSBT_OUT_REDEEM_SCRIPT]), None)
                out.witness_script = entries.pop(bytes([PSBT_OUT_WITNESS_SCRIPT]), None)
                out.unknown = entries
                psbt.outputs[i] = out

        except TransactionError as e:
            raise PsbtError(f"Malformed PSBT: {e}") from e

        if offset != len(data):
            raise PsbtError(f"Trailing data after PSBT: {len(data) - offset} bytes")

        for i in range(len(psbt.inputs)):
            psbt._reject_foreign_signers(i)

        logger.debug(f"Decoded {psbt!r}")
        return psbt


def _write_field(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _write_unknown(entries: dict[bytes, bytes]) -> bytes:
    return b"".join(_write_field(key, entries[key]) for key in sorted(entries))


def _serialize_input(inp: PsbtInput) -> bytes:
    result = b""

    if inp.non_witness_utxo is not None:
        result += _write_field(bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo)
    if inp.witness_utxo is not None:
        result += _write_field(bytes([PSBT_IN_WITNESS_UTXO]), inp.witness_utxo.serialize())
    for pubkey in sorted(inp.partial_sigs):
        result += _write_field(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, inp.partial_sigs[pubkey])
    if inp.sighash_type is not None:
        result += _write_field(
            bytes([PSBT_IN_SIGHASH_TYPE]), inp.sighash_type.to_bytes(4, "little")
        )
    if inp.redeem_script is not None:
        result += _write_field(bytes([PSBT_IN_REDEEM_SCRIPT]), inp.redeem_script)
    if inp.witness_script is not None:
        result += _write_field(bytes([PSBT_IN_WITNESS_SCRIPT]), inp.witness_script)
    if inp.final_script_sig is not None:
        result += _write_field(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
    if inp.final_script_witness is not None:
        witness = encode_varint(len(inp.final_script_witness))
        for item in inp.final_script_witness:
            witness += encode_varint(len(item)) + item
        result += _write_field(bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), witness)

    result += _write_unknown(inp.unknown)
    return result + b"\x00"


def _read_map(data: bytes, offset: int) -> tuple[dict[bytes, bytes], int]:
    """Read one key-value map up to its 0x00 separator."""
    entries: dict[bytes, bytes] = {}

    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return entries, offset

        key = data[offset : offset + key_len]
        offset += key_len
        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        offset += value_len

        if len(key) != key_len or len(value) != value_len:
            raise PsbtError("Truncated PSBT")
        if key in entries:
            raise PsbtError(f"Duplicate PSBT key {key.hex()}")

        entries[key] = value


def _parse_input(entries: dict[bytes, bytes]) -> PsbtInput:
    inp = PsbtInput()

    for key in list(entries):
        key_type, key_data = key[0], key[1:]
        value = entries[key]

        if key_type == PSBT_IN_PARTIAL_SIG:
            if len(key_data) not in (33, 65):
                raise PsbtError(f"Invalid partial signature key {key.hex()}")
            inp.partial_sigs[key_data] = value
        elif key_data:
            continue
        elif key_type == PSBT_IN_NON_WITNESS_UTXO:
            inp.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO:
            amount = int.from_bytes(value[:8], "little")
            script_len, offset = read_varint(value, 8)
            if offset + script_len != len(value):
                raise PsbtError("Malformed witness UTXO")
            inp.witness_utxo = TxOutput(value=amount, script=value[offset:])
        elif key_type == PSBT_IN_SIGHASH_TYPE:
            inp.sighash_type = int.from_bytes(value, "little")
        elif key_type == PSBT_IN_REDEEM_SCRIPT:
            inp.redeem_script = value
        elif key_type == PSBT_IN_WITNESS_SCRIPT:
            inp.witness_script = value
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
            inp.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            count, offset = read_varint(value, 0)
            stack = []
            for _ in range(count):
                item_len, offset = read_varint(value, offset)
                stack.append(value[offset : offset + item_len])
                offset += item_len
            inp.final_script_witness = stack
        else:
            continue

        del entries[key]

    inp.unknown = entries
    return inp
