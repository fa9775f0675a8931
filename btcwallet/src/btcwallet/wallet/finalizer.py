"""
Finalization and broadcast of fully signed PSBTs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from btccore.errors import IncompleteSignaturesError
from loguru import logger

from btcwallet.wallet.models import SpendKind
from btcwallet.wallet.psbt import Psbt
from btcwallet.wallet.script import OP_0, push_data
from btcwallet.wallet.transaction import Transaction, create_witness_stack

if TYPE_CHECKING:
    from btcwallet.backends.base import BlockchainBackend


@dataclass(frozen=True)
class FinalizedTransaction:
    """A finalized PSBT together with the network transaction it yields."""

    psbt: Psbt
    transaction: Transaction

    @property
    def txid(self) -> str:
        return self.transaction.txid

    @property
    def hex(self) -> str:
        return self.transaction.to_hex()

    @property
    def fee(self) -> int:
        return self.psbt.fee

    @property
    def vsize(self) -> int:
        return self.transaction.vsize


def finalize_psbt(psbt: Psbt) -> Psbt:
    """
    Turn every input's signature set into its final unlocking data.

    P2WPKH inputs get the witness [signature, pubkey]. Multisig inputs get
    the scriptSig OP_0 <sig>... <redeem script>, with the first m signatures
    taken in redeem script key order. Already finalized inputs are kept
    as they are, so finalizing twice gives identical bytes.

    Only signatures by keys the input accepts count towards its threshold.
    The signatures that go into the final scripts are verified first, and an
    invalid one raises PsbtError.
    """
    finalized = psbt.copy()

    for index, psbt_input in enumerate(finalized.inputs):
        if psbt_input.is_finalized:
            continue

        requirement = finalized.requirement(index)
        present = finalized.signers_present(index, requirement)

        if len(present) < requirement.required:
            if requirement.kind == SpendKind.P2WPKH:
                pkh = requirement.pubkey_hash or b""
                missing = [f"pkh:{pkh.hex()}"]
            else:
                missing = [pk.hex() for pk in requirement.signers if pk not in present]
            raise IncompleteSignaturesError(
                input_index=index,
                required=requirement.required,
                present=len(present),
                missing=missing,
            )

        used = present[: requirement.required]
        sighash = finalized.signature_hash(index)
        for pubkey in used:
            finalized.check_signature(index, pubkey, sighash)

        if requirement.kind == SpendKind.P2WPKH:
            pubkey = used[0]
            psbt_input.final_script_witness = create_witness_stack(
                psbt_input.partial_sigs[pubkey], pubkey
            )
        else:
            redeem_script = psbt_input.redeem_script or b""
            # OP_0 works around the CHECKMULTISIG extra pop
            script_sig = bytes([OP_0])
            for pubkey in used:
                script_sig += push_data(psbt_input.partial_sigs[pubkey])
            script_sig += push_data(redeem_script)
            psbt_input.final_script_sig = script_sig

        # Finalizer clears everything except UTXO data and final scripts
        psbt_input.partial_sigs = {}
        psbt_input.sighash_type = None
        psbt_input.redeem_script = None
        psbt_input.witness_script = None

        logger.debug(f"Finalized input {index} ({requirement.kind.value})")

    return finalized


def finalize(psbt: Psbt) -> FinalizedTransaction:
    """Finalize all inputs and extract the network transaction."""
    finalized = finalize_psbt(psbt)
    tx = finalized.extract_transaction()

    logger.info(
        f"Finalized transaction {tx.txid}: {len(tx.inputs)} inputs, "
        f"{len(tx.outputs)} outputs, fee {finalized.fee} sats, {tx.vsize} vbytes"
    )
    return FinalizedTransaction(psbt=finalized, transaction=tx)


async def broadcast(backend: BlockchainBackend, finalized: FinalizedTransaction) -> str:
    """
    Submit a finalized transaction. Returns the txid reported by the provider.

    No retry is attempted. Re-broadcasting the same finalized transaction is
    safe; rebuilding it from a fresh selection is the caller's decision.
    """
    logger.info(f"Broadcasting transaction {finalized.txid}")
    txid = await backend.broadcast_transaction(finalized.hex)

    if txid != finalized.txid:
        logger.warning(f"Provider returned txid {txid}, expected {finalized.txid}")

    return txid
