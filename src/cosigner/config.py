"""
Configuration management for the coordination engine.

Provides centralized configuration for:
- Transaction service URLs per chain id
- Service timeouts and retries
- Local storage location
- Chain execution mode (simulated / live)
- Logging configuration

Settings load from environment variables with prefix COSIGNER_.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


# Public Safe Transaction Service hosts
TX_SERVICE_URL_BY_CHAIN: Dict[int, str] = {
    1: "https://safe-transaction-mainnet.safe.global",
    100: "https://safe-transaction-gnosis-chain.safe.global",
    10200: "https://safe-transaction-chiado.safe.global",
    11155111: "https://safe-transaction-sepolia.safe.global",
}

_LOCAL_RPC_PATTERN = re.compile(r"localhost|127\.0\.0\.1|0\.0\.0\.0")


@dataclass
class LoggingConfig:
    """Configuration for lifecycle operation logging."""
    operation_level: str = "INFO"
    service_call_level: str = "DEBUG"
    error_level: str = "ERROR"

    # Sensitive data handling
    mask_addresses: bool = False

    # Audit logging
    audit_log_enabled: bool = True


class CosignerSettings(BaseSettings):
    """Main engine configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Transaction service
    tx_service_enabled: bool = True
    tx_service_urls: Dict[int, str] = Field(
        default_factory=lambda: dict(TX_SERVICE_URL_BY_CHAIN)
    )
    service_timeout_seconds: float = 30.0
    service_max_retries: int = 3

    # Local persistence
    storage_path: str = str(Path.home() / ".cosigner" / "storage.json")

    # Chain execution mode
    chain_mode: Literal["simulated", "live"] = "simulated"

    # Logging
    log_level: str = "WARNING"
    log_json: bool = False

    class Config:
        env_prefix = "COSIGNER_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("tx_service_urls", mode="after")
    @classmethod
    def strip_trailing_slashes(cls, v: Dict[int, str]) -> Dict[int, str]:
        return {int(chain_id): url.rstrip("/") for chain_id, url in v.items() if url}

    @field_validator("service_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("service_max_retries must be at least 1")
        return v

    @property
    def logging_config(self) -> LoggingConfig:
        return LoggingConfig(
            mask_addresses=self.environment == "prod",
        )

    def get_tx_service_url(self, chain_id: Optional[int]) -> Optional[str]:
        """Transaction service URL for a chain, None when unsupported."""
        if chain_id is None:
            return None
        return self.tx_service_urls.get(int(chain_id))

    def remote_service_supports_chain(
        self,
        chain_id: Optional[int],
        rpc_url: Optional[str] = None,
    ) -> bool:
        """Whether the shared pending queue can be used for this chain.

        A local RPC endpoint (dev node) always falls back to the local
        substrate, even if the chain id collides with a public network.
        """
        if self.get_tx_service_url(chain_id) is None:
            return False
        if rpc_url and is_local_rpc_url(rpc_url):
            return False
        return True


def is_local_rpc_url(rpc_url: str) -> bool:
    """True for loopback RPC endpoints."""
    return bool(_LOCAL_RPC_PATTERN.search(rpc_url))


@lru_cache
def load_settings(env_file: str | None = None) -> CosignerSettings:
    """Load CosignerSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return CosignerSettings(_env_file=env_path)
