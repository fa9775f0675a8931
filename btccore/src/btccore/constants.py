"""
Bitcoin constants shared by the wallet components.

The transaction size table is a deliberately coarse approximation: it
prices every input as a P2WPKH input and assumes exactly two outputs
(payment + change). Changing it changes fee outcomes, so it lives here as
a named policy table instead of being derived from the real script types.
"""

from __future__ import annotations

from typing import NamedTuple

# Standard P2PKH dust limit in Bitcoin Core
DUST_THRESHOLD = 546  # satoshis

SATS_PER_BTC = 100_000_000

SIGHASH_ALL = 0x01

# Transaction version used for everything we build
TX_VERSION = 2

# Final sequence, no RBF / relative locktime
SEQUENCE_FINAL = 0xFFFFFFFF

# BIP84 purpose (native segwit)
BIP84_PURPOSE = 84

HARDENED_OFFSET = 0x80000000

# Largest multisig we build: 15 compressed keys keep the redeem script
# under the 520 byte P2SH push limit
MAX_MULTISIG_KEYS = 15


class TxSizeTable(NamedTuple):
    """Virtual size estimates used by coin selection (vbytes)."""

    base: int
    per_input: int
    per_output: int
    outputs: int


# 10 bytes overhead, 68 per input, 31 per output, payment + change
DEFAULT_SIZE_TABLE = TxSizeTable(base=10, per_input=68, per_output=31, outputs=2)
