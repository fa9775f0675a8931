"""
btcwallet CLI - derive addresses, check balances and build, sign and send
single-key or multisig transactions.

Partially signed transactions are passed between signers as hex strings
(or files containing them).
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from btccore.config import WalletSettings, get_settings
from btccore.constants import SATS_PER_BTC
from btccore.errors import InvalidAddressError, WalletError
from btccore.models import FeeTier, NetworkType
from loguru import logger

from btcwallet.wallet.address import scriptpubkey_to_address
from btcwallet.wallet.bip32 import derive_account, mnemonic_to_seed
from btcwallet.wallet.finalizer import finalize
from btcwallet.wallet.models import Account
from btcwallet.wallet.multisig import MultisigWallet
from btcwallet.wallet.psbt import Psbt
from btcwallet.wallet.signer import combine_psbts, sign_psbt, signature_status

app = typer.Typer(
    name="btc-wallet",
    help="Bitcoin wallet - single-key and multisig transactions",
    add_completion=False,
)

T = TypeVar("T")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def load_mnemonic_file(path: Path) -> str:
    """Read a mnemonic stored as plain words or as a JSON array of words."""
    content = path.read_text().strip()
    if content.startswith("["):
        try:
            words = json.loads(content)
        except ValueError as e:
            raise ValueError(f"Invalid JSON mnemonic file {path}: {e}") from e
        if not isinstance(words, list) or not all(isinstance(w, str) for w in words):
            raise ValueError(f"Mnemonic file {path} must contain a list of words")
        return " ".join(words)
    return content


def load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        try:
            mnemonic = load_mnemonic_file(mnemonic_file)
        except ValueError as e:
            logger.error(str(e))
            raise typer.Exit(1)

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def load_psbt_text(value: str) -> str:
    """A PSBT given inline or as a path to a file holding it."""
    path = Path(value)
    if len(value) < 256 and path.is_file():
        return path.read_text().strip()
    return value.strip()


def write_psbt(psbt_text: str, output: Path | None) -> None:
    if output:
        output.write_text(psbt_text + "\n")
        logger.info(f"Wrote PSBT to {output}")
    else:
        print(psbt_text)


def build_settings(network: str | None, api_url: str | None, log_level: str) -> WalletSettings:
    overrides: dict[str, Any] = {"log_level": log_level}
    if network:
        overrides["network"] = network
    if api_url:
        overrides["mempool_api_url"] = api_url
    try:
        return get_settings(**overrides)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)


def run_wallet_task(settings: WalletSettings, task: Callable[[Any], Awaitable[T]]) -> T:
    """Run `task(service)` against a fresh provider connection."""
    from btcwallet.backends.mempool import MempoolBackend
    from btcwallet.wallet.service import WalletService

    async def _run() -> T:
        service = WalletService(MempoolBackend.from_settings(settings), settings)
        try:
            return await task(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_run())
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)


def describe_script(script: bytes, network: NetworkType) -> str:
    try:
        return scriptpubkey_to_address(script, network)
    except InvalidAddressError:
        return f"script {script.hex()}"


def derive_account_for(
    settings: WalletSettings, mnemonic: str, account: int, passphrase: str
) -> Account:
    seed = mnemonic_to_seed(mnemonic, passphrase)
    return derive_account(seed, network=settings.network, account=account)


MnemonicOpt = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic")
MnemonicFileOpt = typer.Option(
    None, "--mnemonic-file", "-f", help="Mnemonic file (plain words or JSON array)"
)
NetworkOpt = typer.Option(
    None, "--network", "-n", envvar="NETWORK", help="mainnet | testnet | signet | regtest"
)
ApiUrlOpt = typer.Option(None, "--api-url", envvar="MEMPOOL_API_URL", help="mempool.space API")
LogLevelOpt = typer.Option("INFO", "--log-level", "-l")


@app.command()
def address(
    mnemonic: str = MnemonicOpt,
    mnemonic_file: Path | None = MnemonicFileOpt,
    account: int = typer.Option(0, "--account", "-a", help="BIP84 account index"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    network: str | None = NetworkOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Show the P2WPKH address and public key of an account."""
    setup_logging(log_level)
    settings = build_settings(network, None, log_level)
    words = load_mnemonic(mnemonic, mnemonic_file)

    try:
        acct = derive_account_for(settings, words, account, passphrase)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    print(f"Path:       {acct.path}")
    print(f"Address:    {acct.address}")
    print(f"Public key: {acct.public_key.hex()}")


@app.command()
def balance(
    addr: str = typer.Argument(..., metavar="ADDRESS", help="Address to query"),
    show_utxos: bool = typer.Option(False, "--utxos", "-u", help="List individual UTXOs"),
    network: str | None = NetworkOpt,
    api_url: str | None = ApiUrlOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Show the balance of an address."""
    setup_logging(log_level)
    settings = build_settings(network, api_url, log_level)

    utxos = run_wallet_task(settings, lambda service: service.get_utxos(addr))
    total = sum(u.value for u in utxos)

    print(f"\nBalance: {total:,} sats ({total / SATS_PER_BTC:.8f} BTC) in {len(utxos)} UTXOs")
    if show_utxos:
        for utxo in utxos:
            state = "confirmed" if utxo.confirmed else "unconfirmed"
            print(f"  {utxo.outpoint}  {utxo.value:>15,} sats  {state}")


@app.command("multisig-address")
def multisig_address(
    pubkeys: list[str] = typer.Option(..., "--pubkey", "-k", help="Participant public key"),
    threshold: int = typer.Option(..., "--threshold", "-m", help="Signatures required"),
    network: str | None = NetworkOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Show the P2SH address and redeem script of an m-of-n wallet."""
    setup_logging(log_level)
    settings = build_settings(network, None, log_level)

    try:
        wallet = MultisigWallet.create(pubkeys, threshold, settings.network)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    print(f"Wallet:        {wallet.description}")
    print(f"Address:       {wallet.address}")
    print(f"Redeem script: {wallet.redeem_script.hex()}")
    for pk in wallet.public_keys:
        print(f"  {pk.hex()}")


@app.command()
def create(
    to_address: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: int = typer.Option(..., "--amount", help="Amount in sats"),
    mnemonic: str = MnemonicOpt,
    mnemonic_file: Path | None = MnemonicFileOpt,
    account: int = typer.Option(0, "--account", "-a", help="BIP84 account index"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    pubkeys: list[str] | None = typer.Option(
        None, "--pubkey", "-k", help="Multisig participant public key (spend from multisig)"
    ),
    threshold: int = typer.Option(0, "--threshold", "-m", help="Multisig signatures required"),
    fee_tier: str | None = typer.Option(
        None, "--fee-tier", help="urgent | default | low | economy | floor"
    ),
    fee_rate: float | None = typer.Option(None, "--fee-rate", help="Explicit rate in sat/vB"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the PSBT to a file"),
    network: str | None = NetworkOpt,
    api_url: str | None = ApiUrlOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Build an unsigned transaction from an account or a multisig wallet."""
    setup_logging(log_level)
    settings = build_settings(network, api_url, log_level)

    words = None if pubkeys else load_mnemonic(mnemonic, mnemonic_file)
    if pubkeys and threshold < 1:
        logger.error("--threshold is required when spending from a multisig wallet")
        raise typer.Exit(1)
    if fee_tier and fee_tier not in {t.value for t in FeeTier}:
        logger.error(f"Unknown fee tier: {fee_tier}")
        raise typer.Exit(1)

    async def _create(service: Any) -> str:
        if pubkeys:
            source = service.get_multisig_wallet(pubkeys, threshold)
        else:
            source = service.get_account(words, account, passphrase)
        logger.info(f"Spending from {source.address}")
        psbt = await service.create_transaction(source, to_address, amount, fee_tier, fee_rate)
        return psbt.to_hex()

    write_psbt(run_wallet_task(settings, _create), output)


@app.command()
def sign(
    psbt: str = typer.Argument(..., help="PSBT hex/base64, or a file containing it"),
    mnemonic: str = MnemonicOpt,
    mnemonic_file: Path | None = MnemonicFileOpt,
    account: int = typer.Option(0, "--account", "-a", help="BIP84 account index"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    inputs: list[int] | None = typer.Option(
        None, "--input", "-i", help="Input index to sign (default: all matching)"
    ),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the PSBT to a file"),
    network: str | None = NetworkOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Add this account's signatures to a PSBT."""
    setup_logging(log_level)
    settings = build_settings(network, None, log_level)
    words = load_mnemonic(mnemonic, mnemonic_file)

    try:
        acct = derive_account_for(settings, words, account, passphrase)
        parsed = Psbt.from_string(load_psbt_text(psbt))
        signed = sign_psbt(parsed, acct.private_key, inputs or None)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    write_psbt(signed.to_hex(), output)


@app.command()
def combine(
    psbts: list[str] = typer.Argument(..., help="PSBTs (or files) to merge"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the PSBT to a file"),
    log_level: str = LogLevelOpt,
) -> None:
    """Merge signatures from independently signed copies of one PSBT."""
    setup_logging(log_level)

    try:
        combined = combine_psbts(*(Psbt.from_string(load_psbt_text(p)) for p in psbts))
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    write_psbt(combined.to_hex(), output)


@app.command()
def status(
    psbt: str = typer.Argument(..., help="PSBT hex/base64, or a file containing it"),
    network: str | None = NetworkOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Show the signing stage, signature progress and outputs of a PSBT."""
    setup_logging(log_level)
    settings = build_settings(network, None, log_level)

    try:
        parsed = Psbt.from_string(load_psbt_text(psbt))
        statuses = signature_status(parsed)
        fee = parsed.fee
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    print(f"\nTransaction: {parsed.tx.txid}")
    print(f"Stage:       {parsed.stage.value}")
    print(f"Fee:         {fee:,} sats")
    for st in statuses:
        state = "finalized" if st.finalized else f"{st.present}/{st.required}"
        print(f"  Input {st.index} ({st.kind.value}): {state}")
        for missing in st.missing:
            print(f"    missing {missing}")
    print("Outputs:")
    for out in parsed.tx.outputs:
        print(f"  {describe_script(out.script, settings.network)}  {out.value:>15,} sats")


@app.command()
def send(
    psbt: str = typer.Argument(..., help="Fully signed PSBT, or a file containing it"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Finalize and print the raw tx only"),
    network: str | None = NetworkOpt,
    api_url: str | None = ApiUrlOpt,
    log_level: str = LogLevelOpt,
) -> None:
    """Finalize a fully signed PSBT and broadcast it."""
    setup_logging(log_level)
    settings = build_settings(network, api_url, log_level)
    psbt_text = load_psbt_text(psbt)

    if dry_run:
        try:
            finalized = finalize(Psbt.from_string(psbt_text))
        except WalletError as e:
            logger.error(str(e))
            raise typer.Exit(1)
        print(finalized.hex)
        return

    txid = run_wallet_task(settings, lambda service: service.send_transaction(psbt_text))
    print(f"\nBroadcast transaction: {txid}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
