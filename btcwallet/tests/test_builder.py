"""
Tests for unsigned transaction assembly.
"""

import pytest
from btccore.constants import DUST_THRESHOLD
from btccore.errors import InvalidAddressError, InvalidAmountError, PsbtError
from btccore.models import NetworkType

from btcwallet.wallet.builder import TransactionBuilder
from btcwallet.wallet.models import CoinSelection, Utxo
from btcwallet.wallet.psbt import TxStage
from btcwallet.wallet.selection import select_utxos


@pytest.fixture
def builder():
    return TransactionBuilder(NetworkType.TESTNET)


def _utxos(*values: int) -> list[Utxo]:
    return [Utxo(txid=f"{i + 1:064x}", vout=i, value=v) for i, v in enumerate(values)]


class TestP2WPKHBuild:
    def test_worked_example(self, builder, testnet_account, recipient):
        selection = select_utxos(_utxos(50000, 30000, 20000), 60000, 2)
        psbt = builder.build(
            selection,
            recipient.address,
            60000,
            testnet_account.address,
            testnet_account.spending_context(),
        )

        assert psbt.stage == TxStage.DRAFT
        assert [out.value for out in psbt.tx.outputs] == [60000, 19428]
        assert psbt.tx.outputs[0].script == recipient.script
        assert psbt.tx.outputs[1].script == testnet_account.script
        assert psbt.fee == 572

    def test_inputs_follow_selection_order(self, builder, testnet_account, recipient):
        utxos = _utxos(20000, 50000, 30000)
        selection = select_utxos(utxos, 60000, 2)
        psbt = builder.build(
            selection,
            recipient.address,
            60000,
            testnet_account.address,
            testnet_account.spending_context(),
        )

        assert [(i.txid, i.vout) for i in psbt.tx.inputs] == [
            (u.txid, u.vout) for u in selection.utxos
        ]
        for psbt_input, utxo in zip(psbt.inputs, selection.utxos):
            assert psbt_input.witness_utxo.value == utxo.value
            assert psbt_input.witness_utxo.script == testnet_account.script
            assert psbt_input.non_witness_utxo is None

    def test_value_conservation(self, builder, testnet_account, recipient):
        selection = select_utxos(_utxos(91234, 5555, 777), 40000, 3)
        psbt = builder.build(
            selection,
            recipient.address,
            40000,
            testnet_account.address,
            testnet_account.spending_context(),
        )
        change = psbt.tx.outputs[1].value
        assert 40000 + change + selection.fee == selection.total_value

    def test_dust_change_absorbed(self, builder, testnet_account, recipient):
        selection = CoinSelection(utxos=_utxos(60800), total_value=60800, fee=572)
        psbt = builder.build(
            selection,
            recipient.address,
            60000,
            testnet_account.address,
            testnet_account.spending_context(),
        )
        assert len(psbt.tx.outputs) == 1
        assert psbt.fee == 800

    def test_change_at_dust_threshold_kept(self, builder, testnet_account, recipient):
        total = 60000 + 572 + DUST_THRESHOLD
        selection = CoinSelection(utxos=_utxos(total), total_value=total, fee=572)
        psbt = builder.build(
            selection,
            recipient.address,
            60000,
            testnet_account.address,
            testnet_account.spending_context(),
        )
        assert [out.value for out in psbt.tx.outputs] == [60000, DUST_THRESHOLD]

    @pytest.mark.parametrize("amount", [0, -1, 79429])
    def test_invalid_amount(self, builder, testnet_account, recipient, amount):
        selection = CoinSelection(utxos=_utxos(50000, 30000), total_value=80000, fee=572)
        with pytest.raises(InvalidAmountError):
            builder.build(
                selection,
                recipient.address,
                amount,
                testnet_account.address,
                testnet_account.spending_context(),
            )

    def test_amount_uses_full_budget(self, builder, testnet_account, recipient):
        selection = CoinSelection(utxos=_utxos(50000, 30000), total_value=80000, fee=572)
        psbt = builder.build(
            selection,
            recipient.address,
            79428,
            testnet_account.address,
            testnet_account.spending_context(),
        )
        assert [out.value for out in psbt.tx.outputs] == [79428]

    def test_mainnet_address_rejected(self, builder, testnet_account, account):
        selection = CoinSelection(utxos=_utxos(50000), total_value=50000, fee=500)
        with pytest.raises(InvalidAddressError):
            builder.build(
                selection,
                account.address,
                1000,
                testnet_account.address,
                testnet_account.spending_context(),
            )


class TestMultisigBuild:
    def test_attaches_previous_tx_and_redeem_script(
        self, builder, multisig_wallet, make_funding_tx, recipient
    ):
        funding = make_funding_tx(multisig_wallet.script_pubkey, [50000, 30000])
        utxos = [
            Utxo(txid=funding.txid, vout=0, value=50000),
            Utxo(txid=funding.txid, vout=1, value=30000),
        ]
        selection = select_utxos(utxos, 60000, 2)
        context = multisig_wallet.spending_context({funding.txid: funding.serialize()})

        psbt = builder.build(
            selection, recipient.address, 60000, multisig_wallet.address, context
        )

        for psbt_input in psbt.inputs:
            assert psbt_input.non_witness_utxo == funding.serialize()
            assert psbt_input.redeem_script == multisig_wallet.redeem_script
            assert psbt_input.witness_utxo is None

        assert psbt.tx.outputs[1].script == multisig_wallet.script_pubkey
        assert psbt.fee == 572

    def test_missing_previous_tx(self, builder, multisig_wallet, recipient):
        selection = CoinSelection(
            utxos=[Utxo(txid="ee" * 32, vout=0, value=50000)], total_value=50000, fee=500
        )
        with pytest.raises(PsbtError):
            builder.build(
                selection,
                recipient.address,
                1000,
                multisig_wallet.address,
                multisig_wallet.spending_context({}),
            )

    def test_value_mismatch(self, builder, multisig_wallet, make_funding_tx, recipient):
        funding = make_funding_tx(multisig_wallet.script_pubkey, [50000])
        selection = CoinSelection(
            utxos=[Utxo(txid=funding.txid, vout=0, value=60000)], total_value=60000, fee=500
        )
        with pytest.raises(PsbtError):
            builder.build(
                selection,
                recipient.address,
                1000,
                multisig_wallet.address,
                multisig_wallet.spending_context({funding.txid: funding.serialize()}),
            )

    def test_foreign_output_rejected(
        self, builder, multisig_wallet, make_funding_tx, recipient
    ):
        funding = make_funding_tx(recipient.script, [50000])
        selection = CoinSelection(
            utxos=[Utxo(txid=funding.txid, vout=0, value=50000)], total_value=50000, fee=500
        )
        with pytest.raises(PsbtError):
            builder.build(
                selection,
                recipient.address,
                1000,
                multisig_wallet.address,
                multisig_wallet.spending_context({funding.txid: funding.serialize()}),
            )
