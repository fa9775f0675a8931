"""
Greedy largest-first coin selection.

The fee is re-estimated after every added UTXO. The size estimate always
counts one input more than currently selected, which slightly overpays
but lets the loop stop as soon as the running total covers amount + fee.
The result is the shortest prefix of the value-sorted UTXO list that
covers the target, not a minimum-fee subset.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from decimal import Decimal

from btccore.constants import DEFAULT_SIZE_TABLE, TxSizeTable
from btccore.errors import InsufficientFundsError, InvalidAmountError
from loguru import logger

from btcwallet.wallet.models import CoinSelection, Utxo


def estimate_vsize(num_inputs: int, size_table: TxSizeTable = DEFAULT_SIZE_TABLE) -> int:
    """Estimated vsize once `num_inputs` UTXOs are selected (padded by one input)."""
    return (
        size_table.base
        + size_table.per_input * (num_inputs + 1)
        + size_table.per_output * size_table.outputs
    )


def estimate_fee(
    num_inputs: int, fee_rate: float | int, size_table: TxSizeTable = DEFAULT_SIZE_TABLE
) -> int:
    """Fee in sats, rounded up to whole satoshis."""
    return math.ceil(Decimal(str(fee_rate)) * estimate_vsize(num_inputs, size_table))


def select_utxos(
    utxos: Sequence[Utxo],
    target_amount: int,
    fee_rate: float | int,
    size_table: TxSizeTable = DEFAULT_SIZE_TABLE,
) -> CoinSelection:
    """
    Select UTXOs largest first until total >= target_amount + fee.

    Args:
        utxos: Spendable outputs, in provider listing order
        target_amount: Payment amount in sats
        fee_rate: sat/vbyte
        size_table: Size estimate constants

    Returns:
        CoinSelection with the chosen UTXOs in selection order

    Raises:
        InvalidAmountError: target_amount is not positive
        InsufficientFundsError: all UTXOs together do not cover amount + fee
    """
    if target_amount <= 0:
        raise InvalidAmountError(f"Target amount must be positive, got {target_amount}")
    if fee_rate < 0:
        raise ValueError(f"Fee rate must not be negative, got {fee_rate}")

    # sorted() is stable, so equal values keep listing order
    ordered = sorted(utxos, key=lambda u: u.value, reverse=True)

    selected: list[Utxo] = []
    total = 0
    fee = estimate_fee(0, fee_rate, size_table)

    for utxo in ordered:
        selected.append(utxo)
        total += utxo.value
        fee = estimate_fee(len(selected), fee_rate, size_table)

        if total >= target_amount + fee:
            logger.debug(
                f"Selected {len(selected)}/{len(ordered)} UTXOs: total {total}, "
                f"target {target_amount}, fee {fee} ({fee_rate} sat/vB)"
            )
            return CoinSelection(utxos=selected, total_value=total, fee=fee)

    raise InsufficientFundsError(target=target_amount, available=total, fee=fee)
