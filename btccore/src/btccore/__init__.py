"""
btccore - Shared constants, models, configuration and errors for btcwallet.
"""

__version__ = "0.3.0"

from btccore.config import WalletSettings, get_settings
from btccore.constants import DEFAULT_SIZE_TABLE, DUST_THRESHOLD, SATS_PER_BTC, TxSizeTable
from btccore.errors import (
    DerivationError,
    IncompleteSignaturesError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidKeyError,
    InvalidStateError,
    NetworkError,
    PsbtError,
    RejectedByNodeError,
    WalletError,
)
from btccore.models import (
    FeeEstimate,
    FeeTier,
    NetworkParams,
    NetworkType,
    get_network_params,
)

__all__ = [
    "DEFAULT_SIZE_TABLE",
    "DUST_THRESHOLD",
    "DerivationError",
    "FeeEstimate",
    "FeeTier",
    "IncompleteSignaturesError",
    "InsufficientFundsError",
    "InvalidAddressError",
    "InvalidAmountError",
    "InvalidKeyError",
    "InvalidStateError",
    "NetworkError",
    "NetworkParams",
    "NetworkType",
    "PsbtError",
    "RejectedByNodeError",
    "SATS_PER_BTC",
    "TxSizeTable",
    "WalletError",
    "WalletSettings",
    "get_network_params",
    "get_settings",
]
