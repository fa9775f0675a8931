"""
Wallet service tying key derivation, the data provider and the
transaction pipeline together.
"""

from __future__ import annotations

from collections.abc import Iterable

from btccore.config import WalletSettings
from btccore.errors import InvalidAmountError
from btccore.models import FeeEstimate, FeeTier, NetworkType
from loguru import logger

from btcwallet.backends.base import BlockchainBackend
from btcwallet.wallet.bip32 import derive_account, mnemonic_to_seed
from btcwallet.wallet.builder import TransactionBuilder
from btcwallet.wallet.finalizer import FinalizedTransaction, broadcast, finalize
from btcwallet.wallet.models import Account, SpendingContext, Utxo
from btcwallet.wallet.multisig import MultisigWallet
from btcwallet.wallet.psbt import Psbt
from btcwallet.wallet.selection import select_utxos
from btcwallet.wallet.signer import sign_psbt


class WalletService:
    """
    Single-key and multisig wallet operations against one data provider.

    Fee rates are fetched fresh for every transaction build. Nothing is
    cached between builds, so concurrent builds for the same address may
    select the same UTXOs.
    """

    def __init__(self, backend: BlockchainBackend, settings: WalletSettings):
        self.backend = backend
        self.settings = settings
        self.network: NetworkType = settings.network
        self.builder = TransactionBuilder(self.network)

    def get_account(
        self, mnemonic: str | list[str], account: int = 0, passphrase: str = ""
    ) -> Account:
        """BIP84 account m/84'/coin'/account'/0/0 for a mnemonic."""
        seed = mnemonic_to_seed(mnemonic, passphrase)
        result = derive_account(seed, network=self.network, account=account)
        logger.debug(f"Derived account {result.path}: {result.address}")
        return result

    def get_multisig_wallet(
        self, public_keys: Iterable[bytes | str], threshold: int
    ) -> MultisigWallet:
        wallet = MultisigWallet.create(public_keys, threshold, self.network)
        logger.debug(f"Multisig {wallet.description} wallet: {wallet.address}")
        return wallet

    async def get_utxos(self, address: str) -> list[Utxo]:
        return await self.backend.get_utxos(address)

    async def get_balance(self, address: str) -> int:
        return await self.backend.get_balance(address)

    async def get_fee_rates(self) -> FeeEstimate:
        return await self.backend.get_fee_rates()

    async def create_transaction(
        self,
        source: Account | MultisigWallet,
        to_address: str,
        amount: int,
        fee_tier: FeeTier | str | None = None,
        fee_rate: float | None = None,
    ) -> Psbt:
        """
        Select UTXOs of `source` and build an unsigned payment to `to_address`.

        Change goes back to the source address. An explicit fee_rate (sat/vB)
        skips the fee oracle.
        """
        if amount <= 0:
            raise InvalidAmountError(f"Payment amount must be positive, got {amount}")

        if fee_rate is None:
            tier = FeeTier(fee_tier or self.settings.fee_tier)
            fee_rate = (await self.backend.get_fee_rates()).rate(tier)
            logger.info(f"Using {tier.value} fee rate: {fee_rate} sat/vB")

        utxos = await self.backend.get_utxos(source.address)
        selection = select_utxos(utxos, amount, fee_rate)

        context: SpendingContext
        if isinstance(source, MultisigWallet):
            previous: dict[str, bytes] = {}
            for utxo in selection.utxos:
                if utxo.txid not in previous:
                    raw = await self.backend.get_transaction_hex(utxo.txid)
                    previous[utxo.txid] = bytes.fromhex(raw)
            context = source.spending_context(previous)
        else:
            context = source.spending_context()

        return self.builder.build(selection, to_address, amount, source.address, context)

    def sign_transaction(
        self,
        psbt: Psbt | str,
        account: Account,
        input_indices: Iterable[int] | None = None,
    ) -> Psbt:
        if isinstance(psbt, str):
            psbt = Psbt.from_string(psbt)
        return sign_psbt(psbt, account.private_key, input_indices)

    def finalize_transaction(self, psbt: Psbt | str) -> FinalizedTransaction:
        if isinstance(psbt, str):
            psbt = Psbt.from_string(psbt)
        return finalize(psbt)

    async def send_transaction(self, psbt: Psbt | str) -> str:
        """Finalize a fully signed PSBT and broadcast it. Returns the txid."""
        return await broadcast(self.backend, self.finalize_transaction(psbt))

    async def close(self) -> None:
        await self.backend.close()
