"""
Signature collection for PSBTs.

Signers apply their keys one after another to the same evolving PSBT.
Each call adds signatures under the signer's public key and never drops
signatures contributed by other keys. Copies signed in parallel must be
merged with combine_psbts before finalizing.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from btccore.constants import SIGHASH_ALL
from btccore.errors import InvalidKeyError, InvalidStateError, PsbtError
from coincurve import PrivateKey
from loguru import logger

from btcwallet.wallet.models import SpendKind
from btcwallet.wallet.psbt import Psbt, PsbtInput, TxStage
from btcwallet.wallet.script import parse_multisig_script, parse_script
from btcwallet.wallet.transaction import sign_sighash


@dataclass(frozen=True)
class InputSignatureStatus:
    index: int
    kind: SpendKind
    required: int
    present: int
    finalized: bool
    # hex public keys (multisig) or pubkey hash (P2WPKH) still expected to sign
    missing: tuple[str, ...]

    @property
    def complete(self) -> bool:
        return self.finalized or self.present >= self.required


def _as_private_key(private_key: PrivateKey | bytes | str) -> PrivateKey:
    if isinstance(private_key, PrivateKey):
        return private_key
    try:
        secret = bytes.fromhex(private_key) if isinstance(private_key, str) else private_key
        return PrivateKey(secret)
    except (TypeError, ValueError) as e:
        raise InvalidKeyError(f"Malformed private key: {e}") from e


def sign_psbt(
    psbt: Psbt,
    private_key: PrivateKey | bytes | str,
    input_indices: Iterable[int] | None = None,
) -> Psbt:
    """
    Sign inputs of a PSBT with one private key. Returns a new PSBT.

    With input_indices=None every input the key can sign is signed and the
    key must match at least one input. With explicit indices each listed
    input must be signable by the key.
    """
    key = _as_private_key(private_key)
    pubkey = key.public_key.format(compressed=True)

    if psbt.stage == TxStage.FINALIZED:
        raise InvalidStateError("Transaction is already finalized")
    if not psbt.inputs:
        raise InvalidStateError("Transaction has no inputs to sign")

    explicit = input_indices is not None
    if input_indices is None:
        indices = list(range(len(psbt.inputs)))
    else:
        indices = sorted(set(input_indices))

    signed = psbt.copy()
    signed_count = 0

    for index in indices:
        if not 0 <= index < len(signed.inputs):
            raise PsbtError(f"Input index {index} out of range (0-{len(signed.inputs) - 1})")

        psbt_input = signed.inputs[index]
        if psbt_input.is_finalized:
            if explicit:
                raise InvalidStateError(f"Input {index} is already finalized")
            continue

        requirement = signed.requirement(index)
        if not requirement.accepts(pubkey):
            if explicit:
                raise InvalidKeyError(
                    f"Key {pubkey.hex()} is not a signer of input {index} "
                    f"({requirement.kind.value})"
                )
            continue

        if psbt_input.sighash_type not in (None, SIGHASH_ALL):
            raise PsbtError(f"Input {index} requests unsupported sighash {psbt_input.sighash_type}")

        sighash = signed.signature_hash(index)
        psbt_input.partial_sigs[pubkey] = sign_sighash(key, sighash, SIGHASH_ALL)
        signed_count += 1

        logger.debug(
            f"Signed input {index} ({requirement.kind.value}) with {pubkey.hex()[:16]}..., "
            f"{len(psbt_input.partial_sigs)}/{requirement.required} signatures"
        )

    if signed_count == 0:
        raise InvalidKeyError(f"Key {pubkey.hex()} does not match any input of this transaction")

    logger.info(f"Applied {signed_count} signature(s), stage is now {signed.stage.value}")
    return signed


def signature_status(psbt: Psbt) -> list[InputSignatureStatus]:
    """Per-input signature progress."""
    statuses = []

    for index, psbt_input in enumerate(psbt.inputs):
        if psbt_input.is_finalized:
            statuses.append(_finalized_status(index, psbt_input))
            continue

        requirement = psbt.requirement(index)
        present = len(psbt.signers_present(index, requirement))

        missing: tuple[str, ...]
        if requirement.kind == SpendKind.P2WPKH:
            pkh = requirement.pubkey_hash or b""
            missing = () if present else (f"pkh:{pkh.hex()}",)
        elif present >= requirement.required:
            missing = ()
        else:
            missing = tuple(
                pk.hex() for pk in requirement.signers if pk not in psbt_input.partial_sigs
            )

        statuses.append(
            InputSignatureStatus(
                index=index,
                kind=requirement.kind,
                required=requirement.required,
                present=present,
                finalized=False,
                missing=missing,
            )
        )

    return statuses


def combine_psbts(*psbts: Psbt) -> Psbt:
    """
    Merge signatures from independently signed copies of one transaction.

    All copies must share the same unsigned transaction. Finalized inputs
    win over partial signatures.

    Every partial signature is verified before it is merged. A signature by
    a key that cannot sign its input, or one that does not verify, raises
    PsbtError.
    """
    if not psbts:
        raise PsbtError("Nothing to combine")

    combined = psbts[0].copy()
    txid = combined.tx.txid
    _check_partial_sigs(combined)

    for other in psbts[1:]:
        if other.tx.serialize() != combined.tx.serialize():
            raise PsbtError(
                f"Cannot combine PSBTs for different transactions ({txid} vs {other.tx.txid})"
            )
        _check_partial_sigs(other)

        for mine, theirs in zip(combined.inputs, other.inputs):
            if mine.is_finalized:
                continue
            if theirs.is_finalized:
                mine.final_script_sig = theirs.final_script_sig
                mine.final_script_witness = theirs.final_script_witness
                mine.partial_sigs.clear()
                continue

            for pubkey, sig in theirs.partial_sigs.items():
                existing = mine.partial_sigs.get(pubkey)
                if existing is not None and existing != sig:
                    logger.warning(
                        f"Conflicting signatures from {pubkey.hex()[:16]}..., keeping first"
                    )
                    continue
                mine.partial_sigs[pubkey] = sig

            mine.non_witness_utxo = mine.non_witness_utxo or theirs.non_witness_utxo
            mine.witness_utxo = mine.witness_utxo or theirs.witness_utxo
            mine.redeem_script = mine.redeem_script or theirs.redeem_script
            for key, value in theirs.unknown.items():
                mine.unknown.setdefault(key, value)

    logger.info(f"Combined {len(psbts)} PSBTs for {txid}, stage {combined.stage.value}")
    return combined


def _check_partial_sigs(psbt: Psbt) -> None:
    for index, psbt_input in enumerate(psbt.inputs):
        if psbt_input.is_finalized or not psbt_input.partial_sigs:
            continue
        sighash = psbt.signature_hash(index)
        for pubkey in psbt_input.partial_sigs:
            psbt.check_signature(index, pubkey, sighash)


def _finalized_status(index: int, psbt_input: PsbtInput) -> InputSignatureStatus:
    """Status of an input whose partial signatures were already consumed."""
    if psbt_input.final_script_witness:
        kind, required = SpendKind.P2WPKH, 1
    else:
        kind, required = SpendKind.P2SH_MULTISIG, 1
        pushes = parse_script(psbt_input.final_script_sig or b"")
        redeem = pushes[-1] if pushes else None
        parsed = parse_multisig_script(redeem) if isinstance(redeem, bytes) else None
        if parsed is not None:
            required = parsed[0]

    return InputSignatureStatus(
        index=index,
        kind=kind,
        required=required,
        present=required,
        finalized=True,
        missing=(),
    )
