"""
Test configuration for btcwallet tests.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from btccore.models import NetworkType

from btcwallet.wallet.bip32 import derive_account, mnemonic_to_seed
from btcwallet.wallet.models import Account
from btcwallet.wallet.multisig import MultisigWallet
from btcwallet.wallet.transaction import Transaction, TxInput, TxOutput


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def seed(test_mnemonic: str) -> bytes:
    return mnemonic_to_seed(test_mnemonic)


@pytest.fixture
def account(seed: bytes) -> Account:
    """Mainnet m/84'/0'/0'/0/0"""
    return derive_account(seed, network=NetworkType.MAINNET)


@pytest.fixture
def testnet_account(seed: bytes) -> Account:
    """Testnet m/84'/1'/0'/0/0"""
    return derive_account(seed, network=NetworkType.TESTNET)


@pytest.fixture
def recipient(seed: bytes) -> Account:
    return derive_account(seed, network=NetworkType.TESTNET, account=9)


@pytest.fixture
def signers(seed: bytes) -> list[Account]:
    """Three independent testnet key holders (accounts 1, 2 and 3)."""
    return [derive_account(seed, network=NetworkType.TESTNET, account=i) for i in (1, 2, 3)]


@pytest.fixture
def multisig_wallet(signers: list[Account]) -> MultisigWallet:
    return MultisigWallet.create([s.public_key for s in signers], 2, NetworkType.TESTNET)


@pytest.fixture
def make_funding_tx() -> Callable[..., Transaction]:
    """Factory for transactions paying `values` to `script_pubkey`."""

    def _make(script_pubkey: bytes, values: list[int], tag: int = 1) -> Transaction:
        return Transaction(
            inputs=[TxInput(txid=bytes([tag] * 32).hex(), vout=0)],
            outputs=[TxOutput(value=v, script=script_pubkey) for v in values],
        )

    return _make
