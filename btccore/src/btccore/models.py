"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from btccore.errors import NetworkError


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class NetworkParams(BaseModel):
    """Address encoding and derivation parameters of a Bitcoin network."""

    bech32_hrp: str
    p2pkh_version: int = Field(..., ge=0, le=255)
    p2sh_version: int = Field(..., ge=0, le=255)
    coin_type: int = Field(..., ge=0)
    default_api_url: str

    model_config = {"frozen": True}


NETWORK_PARAMS: dict[NetworkType, NetworkParams] = {
    NetworkType.MAINNET: NetworkParams(
        bech32_hrp="bc",
        p2pkh_version=0x00,
        p2sh_version=0x05,
        coin_type=0,
        default_api_url="https://mempool.space/api",
    ),
    NetworkType.TESTNET: NetworkParams(
        bech32_hrp="tb",
        p2pkh_version=0x6F,
        p2sh_version=0xC4,
        coin_type=1,
        default_api_url="https://mempool.space/testnet4/api",
    ),
    NetworkType.SIGNET: NetworkParams(
        bech32_hrp="tb",
        p2pkh_version=0x6F,
        p2sh_version=0xC4,
        coin_type=1,
        default_api_url="https://mempool.space/signet/api",
    ),
    NetworkType.REGTEST: NetworkParams(
        bech32_hrp="bcrt",
        p2pkh_version=0x6F,
        p2sh_version=0xC4,
        coin_type=1,
        default_api_url="http://127.0.0.1:8999/api",
    ),
}


def get_network_params(network: NetworkType | str) -> NetworkParams:
    """Look up parameters for a network given as enum or plain string."""
    return NETWORK_PARAMS[NetworkType(network)]


class FeeTier(str, Enum):
    URGENT = "urgent"  # next block
    DEFAULT = "default"  # ~30 minutes
    LOW = "low"  # ~1 hour
    ECONOMY = "economy"  # no time bound
    FLOOR = "floor"  # relay minimum


# mempool.space /v1/fees/recommended field for each tier
MEMPOOL_FEE_FIELDS: dict[FeeTier, str] = {
    FeeTier.URGENT: "fastestFee",
    FeeTier.DEFAULT: "halfHourFee",
    FeeTier.LOW: "hourFee",
    FeeTier.ECONOMY: "economyFee",
    FeeTier.FLOOR: "minimumFee",
}


class FeeEstimate(BaseModel):
    """Fee rates in sat/vbyte by priority tier."""

    urgent: float = Field(..., ge=0)
    default: float = Field(..., ge=0)
    low: float = Field(..., ge=0)
    economy: float = Field(..., ge=0)
    floor: float = Field(..., ge=0)

    model_config = {"frozen": True}

    @classmethod
    def from_mempool(cls, data: Any) -> FeeEstimate:
        """Build from a mempool.space recommended-fees payload."""
        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected fee payload: {data!r}")
        try:
            return cls(**{tier.value: data[field] for tier, field in MEMPOOL_FEE_FIELDS.items()})
        except (KeyError, ValueError) as e:
            raise NetworkError(f"Malformed fee payload: {e}") from e

    def rate(self, tier: FeeTier | str = FeeTier.DEFAULT) -> float:
        return getattr(self, FeeTier(tier).value)
