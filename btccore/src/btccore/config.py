"""
Wallet configuration.

Values come from the environment or a .env file. The resulting object is
passed explicitly to the components that need it.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from btccore.models import FeeTier, NetworkParams, NetworkType, get_network_params


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    network: NetworkType = NetworkType.TESTNET

    # Empty means the network's default mempool.space endpoint
    mempool_api_url: str = ""

    fee_tier: FeeTier = FeeTier.DEFAULT

    request_timeout: float = Field(default=30.0, gt=0)

    log_level: str = "INFO"

    @property
    def params(self) -> NetworkParams:
        return get_network_params(self.network)

    def get_api_url(self) -> str:
        return (self.mempool_api_url or self.params.default_api_url).rstrip("/")


def get_settings(**overrides: object) -> WalletSettings:
    return WalletSettings(**overrides)
