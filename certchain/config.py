"""
CertChain — Configuration System

All configuration is Pydantic-validated and loaded from:
1. config/default.yaml (defaults)
2. Environment variables (overrides)

Every tunable parameter of the issuance core lives here.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class LedgerConfig(BaseModel):
    backend: str = "web3"  # "web3" | "memory"
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int | None = None  # None = ask the node
    user_registry_address: str = ""
    certificate_registry_address: str = ""
    # Only used by the "memory" backend: the contract owner identity
    owner: str = ""
    request_timeout_s: float = 15.0
    confirmation_timeout_s: float = 120.0
    poll_latency_s: float = 0.5
    # Hex private key of the session signer. Set via CERTCHAIN_SIGNER_KEY.
    signer_key: str = ""

    @model_validator(mode="after")
    def _strip_signer_key(self) -> LedgerConfig:
        # Secret managers sometimes append trailing newlines
        if self.signer_key:
            object.__setattr__(self, "signer_key", self.signer_key.strip())
        return self


class ContentStoreConfig(BaseModel):
    backend: str = "pinata"  # "pinata" | "memory"
    api_url: str = "https://api.pinata.cloud"
    jwt: str = ""
    # Read gateways, tried in order. "{hash}" is replaced with the content hash.
    gateways: list[str] = Field(
        default_factory=lambda: [
            "https://ipfs.io/ipfs/{hash}",
            "https://gateway.pinata.cloud/ipfs/{hash}",
            "https://cloudflare-ipfs.com/ipfs/{hash}",
        ]
    )
    # Gateway used when rendering display links
    display_gateway: str = "https://gateway.pinata.cloud/ipfs/{hash}"
    scheme: str = "ipfs"
    request_timeout_s: float = 15.0

    @model_validator(mode="after")
    def _strip_jwt(self) -> ContentStoreConfig:
        if self.jwt:
            object.__setattr__(self, "jwt", self.jwt.strip())
        return self


class RolesConfig(BaseModel):
    # When True, resolved roles are cached until explicitly invalidated
    cache_enabled: bool = False


class LifecycleConfig(BaseModel):
    # Number of request ids read concurrently during a [1, counter] scan
    scan_batch_size: int = 16
    # How far back from the counter to look for a just-submitted request
    submit_locate_window: int = 64
    # Minimum seconds between two non-forced inbox refreshes
    inbox_min_refresh_interval_s: float = 2.0


class CatalogConfig(BaseModel):
    max_concurrent_fetches: int = 8


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class CertChainConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="CERTCHAIN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    roles: RolesConfig = Field(default_factory=RolesConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> CertChainConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets from environment
    import os

    if rpc_url := os.environ.get("CERTCHAIN_LEDGER__RPC_URL"):
        raw.setdefault("ledger", {})["rpc_url"] = rpc_url
    if signer_key := os.environ.get("CERTCHAIN_SIGNER_KEY"):
        raw.setdefault("ledger", {})["signer_key"] = signer_key
    if registry := os.environ.get("CERTCHAIN_USER_REGISTRY_ADDRESS"):
        raw.setdefault("ledger", {})["user_registry_address"] = registry
    if minter := os.environ.get("CERTCHAIN_CERTIFICATE_REGISTRY_ADDRESS"):
        raw.setdefault("ledger", {})["certificate_registry_address"] = minter
    if jwt := os.environ.get("CERTCHAIN_PINATA_JWT"):
        raw.setdefault("content_store", {})["jwt"] = jwt
    if log_level := os.environ.get("CERTCHAIN_LOGGING__LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if overrides:
        raw = _deep_merge(raw, overrides)

    return CertChainConfig(**raw)
