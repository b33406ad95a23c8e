"""
Configuration

This module reads per-chain and process-wide settings from the environment.
A ``.env`` file in the working directory is loaded on import.

Chains are configured by name:
    PROVIDER_ADDR / PROVIDER_MIN_HEIGHT       (defaults provided)
    <NAME>_ADDR / <NAME>_MIN_HEIGHT           (required for consumers)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

PROVIDER_CHAIN = "provider"

DEFAULT_PROVIDER_ADDR = "http://localhost:26657"
DEFAULT_PROVIDER_MIN_HEIGHT = "1"
DEFAULT_DB_FILE = "database.db"
DEFAULT_CONCURRENCY = 32
DEFAULT_RPC_TIMEOUT = 30.0


class ConfigError(ValueError):
    """Exception raised for missing or invalid configuration."""
    pass


def _parse_height(value: str, key: str) -> int:
    try:
        height = int(value, 10)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"failed to parse {key}: {value!r} is not an integer") from e
    if height < 0:
        raise ConfigError(f"{key} must be non-negative, got {height}")
    return height


@dataclass(frozen=True)
class ChainConfig:
    """
    Identity of one chain.

    Attributes:
        name: Chain name, also the cache key namespace
        rpc_addr: Tendermint RPC address of the chain
        min_height: First height to ingest and scan
    """
    name: str
    rpc_addr: str
    min_height: int

    @classmethod
    def from_env(cls, name: str, environ: Optional[Mapping[str, str]] = None) -> "ChainConfig":
        """
        Build the configuration for ``name`` from environment variables.

        The provider falls back to a local node starting at height 1,
        consumers must set both variables.

        Raises:
            ConfigError: If a variable is missing or the height is invalid
        """
        env = os.environ if environ is None else environ
        prefix = name.upper()
        addr_key = f"{prefix}_ADDR"
        height_key = f"{prefix}_MIN_HEIGHT"

        if name == PROVIDER_CHAIN:
            rpc_addr = env.get(addr_key) or DEFAULT_PROVIDER_ADDR
            min_height_str = env.get(height_key) or DEFAULT_PROVIDER_MIN_HEIGHT
        else:
            rpc_addr = env.get(addr_key, "")
            min_height_str = env.get(height_key, "")

        if not rpc_addr:
            raise ConfigError(f"missing {addr_key} environment variable")
        if not min_height_str:
            raise ConfigError(f"missing {height_key} environment variable")

        return cls(name=name, rpc_addr=rpc_addr, min_height=_parse_height(min_height_str, height_key))


@dataclass(frozen=True)
class Settings:
    """Process-wide settings shared by every command."""
    db_file: str = DEFAULT_DB_FILE
    concurrency: int = DEFAULT_CONCURRENCY
    output_dir: str = "."
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        concurrency_str = env.get("VSET_CONCURRENCY", str(DEFAULT_CONCURRENCY))
        try:
            concurrency = int(concurrency_str)
        except ValueError as e:
            raise ConfigError(f"failed to parse VSET_CONCURRENCY: {concurrency_str!r}") from e
        if concurrency < 1:
            raise ConfigError("VSET_CONCURRENCY must be at least 1")

        timeout_str = env.get("RPC_TIMEOUT", str(DEFAULT_RPC_TIMEOUT))
        try:
            rpc_timeout = float(timeout_str)
        except ValueError as e:
            raise ConfigError(f"failed to parse RPC_TIMEOUT: {timeout_str!r}") from e

        return cls(
            db_file=env.get("DB_FILE", DEFAULT_DB_FILE),
            concurrency=concurrency,
            output_dir=env.get("VSET_OUTPUT_DIR", "."),
            rpc_timeout=rpc_timeout,
        )
