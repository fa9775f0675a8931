"""
Wallet error taxonomy.

Every failure surfaces to the immediate caller; nothing in the core retries.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet errors."""


class DerivationError(WalletError):
    """Malformed seed, mnemonic or derivation path. Not retryable."""


class NetworkError(WalletError):
    """Transport or HTTP failure talking to the data provider. Retryable."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (HTTP {status_code}: {body or ''})"
        super().__init__(message)


class RejectedByNodeError(WalletError):
    """Broadcast rejected by the provider. The transaction must be rebuilt."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Transaction rejected (HTTP {status_code}): {body}")


class InsufficientFundsError(WalletError):
    """Coin selection exhausted all UTXOs before covering amount + fee."""

    def __init__(self, target: int, available: int, fee: int):
        self.target = target
        self.available = available
        self.fee = fee
        super().__init__(
            f"Insufficient funds: need {target} + {fee} fee = {target + fee} sats, "
            f"have {available} sats"
        )


class InvalidAmountError(WalletError):
    """Non-positive or over-budget payment amount."""


class InvalidKeyError(WalletError):
    """Key does not match any signer required by the transaction."""


class IncompleteSignaturesError(WalletError):
    """Finalize attempted before an input reached its signature threshold."""

    def __init__(
        self,
        input_index: int,
        required: int,
        present: int,
        missing: list[str] | None = None,
    ):
        self.input_index = input_index
        self.required = required
        self.present = present
        self.missing = missing or []
        message = f"Input {input_index} has {present}/{required} signatures"
        if self.missing:
            message += f"; missing signers: {', '.join(self.missing)}"
        super().__init__(message)


class InvalidStateError(WalletError):
    """Operation is not legal at the transaction's current stage."""


class PsbtError(WalletError):
    """Malformed or inconsistent partially signed transaction."""


class InvalidAddressError(WalletError, ValueError):
    """Address cannot be decoded or belongs to another network."""
