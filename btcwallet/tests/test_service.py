"""
Tests for WalletService against an in-memory data provider.
"""

from __future__ import annotations

import pytest
from btccore.config import WalletSettings
from btccore.errors import (
    IncompleteSignaturesError,
    InsufficientFundsError,
    InvalidAmountError,
    NetworkError,
)
from btccore.models import FeeEstimate, NetworkType

from btcwallet.backends.base import BlockchainBackend
from btcwallet.wallet.models import Utxo
from btcwallet.wallet.psbt import TxStage
from btcwallet.wallet.service import WalletService
from btcwallet.wallet.transaction import deserialize_transaction


class FakeBackend(BlockchainBackend):
    """Records every call; serves canned UTXOs, fees and transactions."""

    def __init__(self, utxos=None, transactions=None):
        self.utxos: dict[str, list[Utxo]] = utxos or {}
        self.transactions: dict[str, str] = transactions or {}
        self.fees = FeeEstimate(urgent=25, default=12, low=8, economy=3, floor=1)
        self.fee_requests = 0
        self.tx_requests: list[str] = []
        self.broadcasts: list[str] = []
        self.closed = False

    async def get_utxos(self, address: str) -> list[Utxo]:
        return list(self.utxos.get(address, []))

    async def get_fee_rates(self) -> FeeEstimate:
        self.fee_requests += 1
        return self.fees

    async def get_transaction_hex(self, txid: str) -> str:
        self.tx_requests.append(txid)
        try:
            return self.transactions[txid]
        except KeyError:
            raise NetworkError("Transaction not found", status_code=404) from None

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        return deserialize_transaction(bytes.fromhex(tx_hex)).txid

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> WalletSettings:
    return WalletSettings(_env_file=None, network=NetworkType.TESTNET, fee_tier="default")


@pytest.fixture
def single_key_setup(settings, testnet_account):
    backend = FakeBackend(
        utxos={
            testnet_account.address: [
                Utxo(txid="11" * 32, vout=0, value=30000, address=testnet_account.address),
                Utxo(txid="22" * 32, vout=1, value=50000, address=testnet_account.address),
            ]
        }
    )
    return WalletService(backend, settings), backend


@pytest.fixture
def multisig_setup(settings, multisig_wallet, make_funding_tx):
    funding = make_funding_tx(multisig_wallet.script_pubkey, [50000, 30000])
    address = multisig_wallet.address
    backend = FakeBackend(
        utxos={
            address: [
                Utxo(txid=funding.txid, vout=0, value=50000, address=address),
                Utxo(txid=funding.txid, vout=1, value=30000, address=address),
            ]
        },
        transactions={funding.txid: funding.to_hex()},
    )
    return WalletService(backend, settings), backend, funding


class TestAccounts:
    def test_get_account(self, settings, test_mnemonic, testnet_account):
        service = WalletService(FakeBackend(), settings)
        account = service.get_account(test_mnemonic)
        assert account.address == testnet_account.address
        assert account.path == "m/84'/1'/0'/0/0"

    def test_get_multisig_wallet(self, settings, signers, multisig_wallet):
        service = WalletService(FakeBackend(), settings)
        keys = [s.public_key.hex() for s in reversed(signers)]
        wallet = service.get_multisig_wallet(keys, 2)
        assert wallet.address == multisig_wallet.address
        assert wallet.description == "2-of-3"

    @pytest.mark.asyncio
    async def test_balance(self, single_key_setup, testnet_account):
        service, _ = single_key_setup
        assert await service.get_balance(testnet_account.address) == 80000
        assert len(await service.get_utxos(testnet_account.address)) == 2


class TestCreateTransaction:
    @pytest.mark.asyncio
    async def test_single_key(self, single_key_setup, testnet_account, recipient):
        service, backend = single_key_setup
        psbt = await service.create_transaction(testnet_account, recipient.address, 60000)

        assert backend.fee_requests == 1
        assert psbt.stage == TxStage.DRAFT
        # Largest UTXO first
        assert [i.txid for i in psbt.tx.inputs] == ["22" * 32, "11" * 32]
        assert [(o.value, o.script) for o in psbt.tx.outputs] == [
            (60000, recipient.script),
            (16688, testnet_account.script),
        ]
        assert psbt.fee == 3312

    @pytest.mark.asyncio
    async def test_fee_tier(self, single_key_setup, testnet_account, recipient):
        service, _ = single_key_setup
        psbt = await service.create_transaction(
            testnet_account, recipient.address, 10000, fee_tier="urgent"
        )
        # One input: 208 vbytes at 25 sat/vB
        assert psbt.fee == 5200

    @pytest.mark.asyncio
    async def test_explicit_rate_skips_oracle(self, single_key_setup, testnet_account, recipient):
        service, backend = single_key_setup
        psbt = await service.create_transaction(
            testnet_account, recipient.address, 10000, fee_rate=1.0
        )
        assert backend.fee_requests == 0
        assert psbt.fee == 208

    @pytest.mark.asyncio
    async def test_fees_fetched_per_build(self, single_key_setup, testnet_account, recipient):
        service, backend = single_key_setup
        await service.create_transaction(testnet_account, recipient.address, 10000)
        backend.fees = FeeEstimate(urgent=50, default=40, low=20, economy=10, floor=1)
        psbt = await service.create_transaction(testnet_account, recipient.address, 10000)
        assert backend.fee_requests == 2
        assert psbt.fee == 8320

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, single_key_setup, testnet_account, recipient):
        service, _ = single_key_setup
        with pytest.raises(InsufficientFundsError) as exc_info:
            await service.create_transaction(testnet_account, recipient.address, 80000)
        assert exc_info.value.available == 80000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_invalid_amount(self, single_key_setup, testnet_account, recipient, amount):
        service, backend = single_key_setup
        with pytest.raises(InvalidAmountError):
            await service.create_transaction(testnet_account, recipient.address, amount)
        assert backend.fee_requests == 0

    @pytest.mark.asyncio
    async def test_multisig_fetches_previous_tx(
        self, multisig_setup, multisig_wallet, recipient
    ):
        service, backend, funding = multisig_setup
        psbt = await service.create_transaction(multisig_wallet, recipient.address, 60000)

        assert backend.tx_requests == [funding.txid]
        assert all(inp.non_witness_utxo == funding.serialize() for inp in psbt.inputs)
        assert all(inp.redeem_script == multisig_wallet.redeem_script for inp in psbt.inputs)
        assert psbt.tx.outputs[1].script == multisig_wallet.script_pubkey

    @pytest.mark.asyncio
    async def test_multisig_missing_previous_tx(
        self, multisig_setup, multisig_wallet, recipient
    ):
        service, backend, _ = multisig_setup
        backend.transactions.clear()
        with pytest.raises(NetworkError):
            await service.create_transaction(multisig_wallet, recipient.address, 60000)


class TestSendTransaction:
    @pytest.mark.asyncio
    async def test_single_key_roundtrip(self, single_key_setup, testnet_account, recipient):
        service, backend = single_key_setup
        psbt = await service.create_transaction(testnet_account, recipient.address, 60000)
        signed = service.sign_transaction(psbt.to_base64(), testnet_account)

        txid = await service.send_transaction(signed.to_hex())

        assert txid == psbt.tx.txid
        assert len(backend.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_multisig_two_of_three(
        self, multisig_setup, multisig_wallet, recipient, signers
    ):
        service, backend, _ = multisig_setup
        psbt = await service.create_transaction(multisig_wallet, recipient.address, 60000)

        first = service.sign_transaction(psbt.to_base64(), signers[2])
        assert first.stage == TxStage.PARTIALLY_SIGNED
        with pytest.raises(IncompleteSignaturesError):
            await service.send_transaction(first)
        assert backend.broadcasts == []

        second = service.sign_transaction(first.to_base64(), signers[0])
        assert second.stage == TxStage.READY_TO_FINALIZE

        finalized = service.finalize_transaction(second)
        txid = await service.send_transaction(second)
        assert txid == finalized.txid
        assert backend.broadcasts == [finalized.hex]

    @pytest.mark.asyncio
    async def test_close(self, single_key_setup):
        service, backend = single_key_setup
        await service.close()
        assert backend.closed
