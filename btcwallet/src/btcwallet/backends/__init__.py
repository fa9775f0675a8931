"""
Blockchain data provider implementations.

Available backends:
- MempoolBackend: mempool.space compatible REST API (Esplora style endpoints)
"""

from btcwallet.backends.base import BlockchainBackend
from btcwallet.backends.mempool import MempoolBackend

__all__ = [
    "BlockchainBackend",
    "MempoolBackend",
]
