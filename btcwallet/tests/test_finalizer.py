"""
Tests for finalization, extraction and broadcast, including the full
2-of-3 multisig flow.
"""

from unittest.mock import AsyncMock

import pytest
from btccore.errors import (
    IncompleteSignaturesError,
    InvalidStateError,
    PsbtError,
    RejectedByNodeError,
)
from coincurve import PrivateKey

from btcwallet.wallet.finalizer import broadcast, finalize, finalize_psbt
from btcwallet.wallet.psbt import Psbt, TxStage
from btcwallet.wallet.script import OP_0, parse_script
from btcwallet.wallet.signer import sign_psbt
from btcwallet.wallet.transaction import (
    TxOutput,
    compute_sighash_legacy,
    compute_sighash_segwit,
    create_p2wpkh_script_code,
    deserialize_transaction,
    hash256,
    sign_sighash,
    verify_sighash_signature,
)


@pytest.fixture
def p2wpkh_psbt(testnet_account, recipient):
    psbt = Psbt()
    psbt.add_input("aa" * 32, 0, witness_utxo=TxOutput(50000, testnet_account.script))
    psbt.add_output(recipient.script, 40000)
    psbt.add_output(testnet_account.script, 9000)
    return psbt


@pytest.fixture
def multisig_psbt(multisig_wallet, make_funding_tx, recipient):
    funding = make_funding_tx(multisig_wallet.script_pubkey, [80000])
    psbt = Psbt()
    psbt.add_input(
        funding.txid,
        0,
        non_witness_utxo=funding.serialize(),
        redeem_script=multisig_wallet.redeem_script,
    )
    psbt.add_output(recipient.script, 60000)
    psbt.add_output(multisig_wallet.script_pubkey, 19428)
    return psbt


class TestP2WPKHFinalize:
    def test_witness_stack(self, p2wpkh_psbt, testnet_account):
        signed = sign_psbt(p2wpkh_psbt, testnet_account.private_key)
        finalized = finalize(signed)

        witness = finalized.transaction.inputs[0].witness
        assert len(witness) == 2
        assert witness[1] == testnet_account.public_key
        assert finalized.transaction.inputs[0].script_sig == b""

        sighash = compute_sighash_segwit(
            finalized.transaction,
            0,
            create_p2wpkh_script_code(testnet_account.public_key),
            50000,
        )
        assert verify_sighash_signature(testnet_account.public_key, witness[0], sighash)

    def test_summary(self, p2wpkh_psbt, testnet_account):
        finalized = finalize(sign_psbt(p2wpkh_psbt, testnet_account.private_key))
        assert finalized.fee == 1000
        assert finalized.txid == p2wpkh_psbt.tx.txid
        assert finalized.vsize < len(bytes.fromhex(finalized.hex))
        assert deserialize_transaction(bytes.fromhex(finalized.hex)).txid == finalized.txid

    def test_partial_fields_cleared(self, p2wpkh_psbt, testnet_account):
        finalized = finalize_psbt(sign_psbt(p2wpkh_psbt, testnet_account.private_key))
        assert finalized.stage == TxStage.FINALIZED
        assert finalized.inputs[0].partial_sigs == {}
        assert finalized.inputs[0].witness_utxo is not None

    def test_unsigned_rejected(self, p2wpkh_psbt):
        with pytest.raises(IncompleteSignaturesError) as exc_info:
            finalize(p2wpkh_psbt)
        assert exc_info.value.input_index == 0
        assert exc_info.value.present == 0


class TestMultisigFinalize:
    def test_script_sig_layout(self, multisig_psbt, multisig_wallet, signers):
        signed = sign_psbt(sign_psbt(multisig_psbt, signers[2].private_key), signers[0].private_key)
        tx = finalize(signed).transaction

        items = parse_script(tx.inputs[0].script_sig)
        assert items[0] == OP_0
        assert items[-1] == multisig_wallet.redeem_script
        assert len(items) == 4
        assert tx.inputs[0].witness == []

        # Signatures follow redeem script key order
        sighash = compute_sighash_legacy(tx, 0, multisig_wallet.redeem_script)
        sig_keys = [
            pk
            for sig in items[1:3]
            for pk in multisig_wallet.public_keys
            if verify_sighash_signature(pk, sig, sighash)
        ]
        assert sig_keys == [
            pk
            for pk in multisig_wallet.public_keys
            if pk in (signers[0].public_key, signers[2].public_key)
        ]

    def test_signer_order_irrelevant(self, multisig_psbt, signers):
        ab = sign_psbt(sign_psbt(multisig_psbt, signers[0].private_key), signers[1].private_key)
        ba = sign_psbt(sign_psbt(multisig_psbt, signers[1].private_key), signers[0].private_key)
        assert finalize(ab).hex == finalize(ba).hex

    def test_extra_signature_ignored(self, multisig_psbt, signers):
        signed = multisig_psbt
        for signer in signers:
            signed = sign_psbt(signed, signer.private_key)
        items = parse_script(finalize(signed).transaction.inputs[0].script_sig)
        assert len(items) == 4

    def test_below_threshold(self, multisig_psbt, signers):
        signed = sign_psbt(multisig_psbt, signers[1].private_key)
        with pytest.raises(IncompleteSignaturesError) as exc_info:
            finalize(signed)

        err = exc_info.value
        assert err.required == 2
        assert err.present == 1
        assert signers[1].public_key.hex() not in err.missing
        assert len(err.missing) == 2


class TestTwoOfThreeFlow:
    def test_full_flow(self, multisig_psbt, signers):
        blob = multisig_psbt.to_hex()

        # Signer A
        psbt = sign_psbt(Psbt.from_string(blob), signers[0].private_key)
        assert psbt.stage == TxStage.PARTIALLY_SIGNED
        after_a = psbt.to_hex()

        # Signer B works on A's output
        psbt = sign_psbt(Psbt.from_string(after_a), signers[1].private_key)
        assert psbt.stage == TxStage.READY_TO_FINALIZE

        finalized = finalize(psbt)
        assert finalized.psbt.stage == TxStage.FINALIZED

        # Signer C only holds the copy from before B signed
        with pytest.raises(IncompleteSignaturesError):
            finalize(Psbt.from_string(after_a))

    def test_finalize_idempotent(self, multisig_psbt, signers):
        signed = sign_psbt(sign_psbt(multisig_psbt, signers[0].private_key), signers[1].private_key)
        once = finalize_psbt(signed)
        twice = finalize_psbt(once)
        assert twice.serialize() == once.serialize()
        assert finalize(once).hex == finalize(signed).hex

    def test_finalized_psbt_survives_encoding(self, multisig_psbt, signers):
        signed = sign_psbt(sign_psbt(multisig_psbt, signers[0].private_key), signers[1].private_key)
        once = finalize_psbt(signed)
        decoded = Psbt.from_hex(once.to_hex())
        assert decoded.stage == TxStage.FINALIZED
        assert decoded.extract_transaction().to_hex() == once.extract_transaction().to_hex()

    def test_finalized_cannot_be_extended(self, multisig_psbt, signers, testnet_account):
        signed = sign_psbt(sign_psbt(multisig_psbt, signers[0].private_key), signers[1].private_key)
        once = finalize_psbt(signed)
        with pytest.raises(InvalidStateError):
            once.add_output(testnet_account.script, 1000)


class TestSignatureChecks:
    def test_outsider_signature_does_not_count(self, multisig_psbt, signers, recipient):
        psbt = sign_psbt(multisig_psbt, signers[0].private_key)
        outsider_sig = sign_sighash(PrivateKey(recipient.private_key), psbt.signature_hash(0))
        psbt.inputs[0].partial_sigs[recipient.public_key] = outsider_sig

        assert psbt.signers_present(0) == [signers[0].public_key]
        assert psbt.stage == TxStage.PARTIALLY_SIGNED

        with pytest.raises(IncompleteSignaturesError) as exc_info:
            finalize(psbt)
        err = exc_info.value
        assert err.present == 1
        assert err.required == 2
        assert signers[0].public_key.hex() not in err.missing
        assert recipient.public_key.hex() not in err.missing

    def test_outsider_signature_rejected_on_decode(self, multisig_psbt, signers, recipient):
        psbt = sign_psbt(multisig_psbt, signers[0].private_key)
        psbt.inputs[0].partial_sigs[recipient.public_key] = sign_sighash(
            PrivateKey(recipient.private_key), psbt.signature_hash(0)
        )

        with pytest.raises(PsbtError, match="not a signer"):
            Psbt.from_hex(psbt.to_hex())

    def test_malformed_signature_rejected(self, p2wpkh_psbt, testnet_account):
        signed = sign_psbt(p2wpkh_psbt, testnet_account.private_key)
        signed.inputs[0].partial_sigs[testnet_account.public_key] = b"\x30\x00\x01"
        decoded = Psbt.from_hex(signed.to_hex())

        assert decoded.stage == TxStage.READY_TO_FINALIZE
        with pytest.raises(PsbtError, match="invalid signature"):
            finalize(decoded)

    def test_signature_over_other_message_rejected(self, p2wpkh_psbt, testnet_account):
        signed = sign_psbt(p2wpkh_psbt, testnet_account.private_key)
        signed.inputs[0].partial_sigs[testnet_account.public_key] = sign_sighash(
            PrivateKey(testnet_account.private_key), hash256(b"another transaction")
        )

        with pytest.raises(PsbtError, match="invalid signature"):
            finalize_psbt(signed)

    def test_non_sighash_all_rejected(self, multisig_psbt, signers):
        signed = sign_psbt(sign_psbt(multisig_psbt, signers[0].private_key), signers[1].private_key)
        sig = signed.inputs[0].partial_sigs[signers[1].public_key]
        signed.inputs[0].partial_sigs[signers[1].public_key] = sig[:-1] + b"\x03"

        with pytest.raises(PsbtError, match="SIGHASH_ALL"):
            finalize(signed)

    def test_unused_extra_signature_not_checked(self, multisig_psbt, signers, multisig_wallet):
        signed = multisig_psbt
        for signer in signers:
            signed = sign_psbt(signed, signer.private_key)
        # The last key in redeem order is beyond the 2-of-3 threshold
        last = multisig_wallet.public_keys[-1]
        signed.inputs[0].partial_sigs[last] = b"\x30\x00\x01"

        items = parse_script(finalize(signed).transaction.inputs[0].script_sig)
        assert b"\x30\x00\x01" not in items


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_returns_txid(self, p2wpkh_psbt, testnet_account):
        finalized = finalize(sign_psbt(p2wpkh_psbt, testnet_account.private_key))
        backend = AsyncMock()
        backend.broadcast_transaction = AsyncMock(return_value=finalized.txid)

        txid = await broadcast(backend, finalized)

        assert txid == finalized.txid
        backend.broadcast_transaction.assert_awaited_once_with(finalized.hex)

    @pytest.mark.asyncio
    async def test_rejection_propagates(self, p2wpkh_psbt, testnet_account):
        finalized = finalize(sign_psbt(p2wpkh_psbt, testnet_account.private_key))
        backend = AsyncMock()
        backend.broadcast_transaction = AsyncMock(
            side_effect=RejectedByNodeError(400, "min relay fee not met")
        )

        with pytest.raises(RejectedByNodeError):
            await broadcast(backend, finalized)
        assert backend.broadcast_transaction.await_count == 1
