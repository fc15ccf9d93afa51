"""
TOML-based configuration for the MOOSH wallet core.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from moosh_core.config import load_config
    cfg = load_config("moosh.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class BackupConfig:
    """Encrypted-backup parameters.

    The scrypt cost values only apply to *new* backups; every bundle stores
    the parameters it was written with and is decrypted with those.
    """
    scrypt_n: int = 32768
    scrypt_r: int = 8
    scrypt_p: int = 1
    min_password_length: int = 12
    qr_chunk_size: int = 2000
    batch_size: int = 10     # max concurrent scrypt derivations


@dataclass
class ServerConfig:
    """HTTP adapter settings."""
    host: str = "127.0.0.1"
    port: int = 3001
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 4_194_304    # 4 MiB; batch uploads are large


@dataclass
class BalanceConfig:
    """Balance-lookup collaborators, tried in listed order."""
    providers: list[str] = field(default_factory=lambda: [
        "https://blockstream.info/api",
        "https://mempool.space/api",
    ])
    testnet_providers: list[str] = field(default_factory=lambda: [
        "https://blockstream.info/testnet/api",
        "https://mempool.space/testnet/api",
    ])
    cache_ttl_seconds: float = 30.0
    timeout_seconds: float = 10.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class MooshConfig:
    """Top-level configuration container."""
    backup: BackupConfig = field(default_factory=BackupConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split_csv(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


def load_config(path: str | None = None) -> MooshConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        MOOSH_HOST              -> server.host
        MOOSH_PORT              -> server.port
        MOOSH_CORS_ORIGINS      -> server.cors_origins   (comma-separated)
        MOOSH_SCRYPT_N          -> backup.scrypt_n
        MOOSH_BATCH_SIZE        -> backup.batch_size
        MOOSH_BALANCE_PROVIDERS -> balance.providers     (comma-separated)
        MOOSH_CACHE_TTL         -> balance.cache_ttl_seconds
        MOOSH_LOG_LEVEL         -> logging.level
        MOOSH_LOG_FMT           -> logging.format
    """
    cfg = MooshConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("backup", cfg.backup),
                ("server", cfg.server),
                ("balance", cfg.balance),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("MOOSH_HOST"):
        cfg.server.host = v
    if v := os.environ.get("MOOSH_PORT"):
        cfg.server.port = int(v)
    if v := os.environ.get("MOOSH_CORS_ORIGINS"):
        cfg.server.cors_origins = _split_csv(v)
    if v := os.environ.get("MOOSH_SCRYPT_N"):
        cfg.backup.scrypt_n = int(v)
    if v := os.environ.get("MOOSH_BATCH_SIZE"):
        cfg.backup.batch_size = int(v)
    if v := os.environ.get("MOOSH_BALANCE_PROVIDERS"):
        cfg.balance.providers = _split_csv(v)
    if v := os.environ.get("MOOSH_CACHE_TTL"):
        cfg.balance.cache_ttl_seconds = float(v)
    if v := os.environ.get("MOOSH_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("MOOSH_LOG_FMT"):
        cfg.logging.format = v

    return cfg
