"""Keygate configuration management.

Configuration sources (in priority order):
1. Environment variables (KEYGATE_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite by default; postgresql+asyncpg:// works the same way
    url: str = "sqlite+aiosqlite:///./keygate.db"
    echo: bool = False


class HashingConfig(BaseModel):
    """Secret hashing configuration.

    bcrypt cost 12 takes a few hundred milliseconds per hash on commodity
    hardware. Tests drop it to the bcrypt minimum (4).
    """

    rounds: int = Field(default=12, ge=4, le=31)


class IssuanceConfig(BaseModel):
    """Key issuance limits."""

    default_length: int = Field(default=64, ge=32, le=256)
    # The credential format check accepts at most 10 prefix characters
    min_prefix_length: int = Field(default=2, ge=1, le=10)
    max_prefix_length: int = Field(default=10, ge=1, le=10)
    min_expires_in: int = 60  # seconds
    max_expires_in: int = 365 * 24 * 60 * 60  # 365 days

    @model_validator(mode="after")
    def _check_prefix_bounds(self) -> "IssuanceConfig":
        if self.max_prefix_length < self.min_prefix_length:
            raise ValueError("max_prefix_length must be >= min_prefix_length")
        return self


class VerificationConfig(BaseModel):
    """Verification pipeline configuration."""

    header_name: str = "x-api-key"

    # Upper bound on rows hashed per request when `start` collides
    candidate_limit: int = Field(default=20, ge=1)

    # Random delay applied only when no candidate matched
    failure_delay_min_ms: int = Field(default=50, ge=0)
    failure_delay_max_ms: int = Field(default=150, ge=0)

    # Time budget per request; the failure delay never runs past it
    request_deadline_ms: int = Field(default=1000, ge=0)

    # Compare-and-swap attempts before giving up with a transient error
    max_update_attempts: int = Field(default=32, ge=1)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "VerificationConfig":
        if self.failure_delay_max_ms < self.failure_delay_min_ms:
            raise ValueError("failure_delay_max_ms must be >= failure_delay_min_ms")
        return self


class ExpiryConfig(BaseModel):
    """Expired key handling."""

    # False: delete inline before returning EXPIRED
    # True: schedule the delete in the background
    defer_delete: bool = False


class BootstrapConfig(BaseModel):
    """First-boot key provisioning.

    When owner_id is set and that owner has no keys, a full-access key is
    issued on startup and written to ``<data_dir>/credentials.json``.
    """

    owner_id: str | None = None
    prefix: str | None = "kg_"
    data_dir: str = "."


class Settings(BaseSettings):
    """Keygate application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KEYGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    hashing: HashingConfig = Field(default_factory=HashingConfig)
    issuance: IssuanceConfig = Field(default_factory=IssuanceConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    expiry: ExpiryConfig = Field(default_factory=ExpiryConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. KEYGATE_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/keygate/config.yaml
    """
    config_paths = [
        os.environ.get("KEYGATE_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/keygate/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)
