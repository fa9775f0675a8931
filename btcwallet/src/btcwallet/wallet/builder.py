"""
Unsigned transaction assembly.

Builds a draft PSBT from a coin selection:
- One input per selected UTXO, in selection order
- Payment output first
- Change output back to the originating address, unless it would be dust
"""

from __future__ import annotations

from btccore.constants import DUST_THRESHOLD
from btccore.errors import InvalidAmountError, PsbtError
from btccore.models import NetworkType
from loguru import logger

from btcwallet.wallet.address import address_to_scriptpubkey
from btcwallet.wallet.models import CoinSelection, SpendingContext, SpendKind, Utxo
from btcwallet.wallet.psbt import Psbt
from btcwallet.wallet.transaction import TxOutput, deserialize_transaction


class TransactionBuilder:
    """
    Builds unsigned transactions for single-key and P2SH multisig wallets.

    P2WPKH inputs carry the spent output (value + script) for BIP143 hashing.
    P2SH multisig inputs carry the full previous transaction and the redeem
    script, since legacy hashing needs the whole referenced transaction.
    """

    def __init__(self, network: NetworkType | str = NetworkType.MAINNET):
        self.network = NetworkType(network)

    def build(
        self,
        selection: CoinSelection,
        payment_address: str,
        payment_amount: int,
        change_address: str,
        context: SpendingContext,
    ) -> Psbt:
        """
        Build an unsigned transaction.

        Args:
            selection: Chosen UTXOs with their total and the estimated fee
            payment_address: Recipient address
            payment_amount: Amount to pay in sats
            change_address: Address receiving the change (the spending address)
            context: How the selected UTXOs are unlocked

        Returns:
            Draft PSBT ready for signing
        """
        budget = selection.total_value - selection.fee
        if payment_amount <= 0:
            raise InvalidAmountError(f"Payment amount must be positive, got {payment_amount}")
        if payment_amount > budget:
            raise InvalidAmountError(
                f"Payment amount {payment_amount} exceeds inputs {selection.total_value} "
                f"minus fee {selection.fee}"
            )

        payment_script = address_to_scriptpubkey(payment_address, self.network)
        change_script = address_to_scriptpubkey(change_address, self.network)

        psbt = Psbt()
        for utxo in selection.utxos:
            self._add_input(psbt, utxo, context)

        psbt.add_output(payment_script, payment_amount)

        change = budget - payment_amount
        if change >= DUST_THRESHOLD:
            psbt.add_output(change_script, change)
        elif change > 0:
            logger.debug(f"Change {change} sats is below dust, adding it to the fee")

        logger.info(
            f"Built transaction: {len(selection.utxos)} inputs, {len(psbt.tx.outputs)} outputs, "
            f"payment {payment_amount}, fee {psbt.fee} sats"
        )
        return psbt

    def _add_input(self, psbt: Psbt, utxo: Utxo, context: SpendingContext) -> None:
        if context.kind == SpendKind.P2WPKH:
            psbt.add_input(
                utxo.txid,
                utxo.vout,
                witness_utxo=TxOutput(value=utxo.value, script=context.script_pubkey),
            )
            return

        if context.redeem_script is None:
            raise PsbtError("Multisig spending requires a redeem script")

        try:
            raw_tx = context.previous_transaction(utxo)
        except KeyError as e:
            raise PsbtError(str(e.args[0])) from e
        prev_outputs = deserialize_transaction(raw_tx).outputs
        if utxo.vout >= len(prev_outputs):
            raise PsbtError(f"Previous transaction of {utxo.outpoint} has no output {utxo.vout}")

        prev_output = prev_outputs[utxo.vout]
        if prev_output.value != utxo.value:
            raise PsbtError(
                f"UTXO {utxo.outpoint} reports {utxo.value} sats, "
                f"previous transaction has {prev_output.value}"
            )
        if prev_output.script != context.script_pubkey:
            raise PsbtError(f"UTXO {utxo.outpoint} is not locked to the multisig address")

        psbt.add_input(
            utxo.txid,
            utxo.vout,
            non_witness_utxo=raw_tx,
            redeem_script=context.redeem_script,
        )
