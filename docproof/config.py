"""
Configuration — defaults, overlaid by a TOML file, overlaid by environment.

Sources (later wins):
    1. DEFAULT_CONFIG below
    2. TOML file: --config path, DOCPROOF_CONFIG, or ~/.docproof/docproof.toml
    3. Environment variables (DOCPROOF_*, BITCOIN_RPC_*, BLOCKCYPHER_TOKEN)

The webhook secret is kept out of the TOML file on purpose: it lives in
DOCPROOF_WEBHOOK_SECRET or <data_dir>/webhook_secret (mode 0600).
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from docproof import (
    API_DEFAULT_HOST,
    API_DEFAULT_PORT,
    API_POLL_INTERVAL_SECS,
    DEFAULT_ANCHOR_FEE_SATS,
    DEFAULT_CLAIM_TTL_SECS,
    DEFAULT_DOCUMENT_PRICE_SATS,
    DEFAULT_FEED_SIZE,
    DEFAULT_REQUIRED_CONFIRMATIONS,
    DUST_LIMIT_SATS,
)

log = logging.getLogger(__name__)

_DEFAULT_DATA_DIR = Path.home() / ".docproof"

DEFAULT_CONFIG: dict[str, Any] = {
    "host": API_DEFAULT_HOST,
    "port": API_DEFAULT_PORT,
    "public_url": f"http://{API_DEFAULT_HOST}:{API_DEFAULT_PORT}",
    "data_dir": str(_DEFAULT_DATA_DIR),
    "coin": "btc",
    "network": "test3",
    "blockcypher_token": "",
    "document_price": DEFAULT_DOCUMENT_PRICE_SATS,
    "anchor_fee": DEFAULT_ANCHOR_FEE_SATS,
    "treasury_address": "",
    "feed_size": DEFAULT_FEED_SIZE,
    "poll_interval": API_POLL_INTERVAL_SECS,
    "anchor_claim_ttl": DEFAULT_CLAIM_TTL_SECS,
    "required_confirmations": DEFAULT_REQUIRED_CONFIRMATIONS,
    "rpc_url": "",
    "rpc_user": "",
    "rpc_password": "",
}

# env var → config key
_ENV_OVERRIDES = {
    "DOCPROOF_HOST": "host",
    "DOCPROOF_PORT": "port",
    "DOCPROOF_PUBLIC_URL": "public_url",
    "DOCPROOF_DATA_DIR": "data_dir",
    "DOCPROOF_COIN": "coin",
    "DOCPROOF_NETWORK": "network",
    "DOCPROOF_DOCUMENT_PRICE": "document_price",
    "DOCPROOF_ANCHOR_FEE": "anchor_fee",
    "DOCPROOF_TREASURY_ADDRESS": "treasury_address",
    "DOCPROOF_FEED_SIZE": "feed_size",
    "DOCPROOF_POLL_INTERVAL": "poll_interval",
    "DOCPROOF_ANCHOR_CLAIM_TTL": "anchor_claim_ttl",
    "DOCPROOF_REQUIRED_CONFIRMATIONS": "required_confirmations",
    "BLOCKCYPHER_TOKEN": "blockcypher_token",
    "BITCOIN_RPC_URL": "rpc_url",
    "BITCOIN_RPC_USER": "rpc_user",
    "BITCOIN_RPC_PASS": "rpc_password",
}

# BlockCypher chain name → display name
_NETWORK_NAMES = {
    "main": "mainnet",
    "test3": "testnet",
    "test": "testnet",
    "signet": "signet",
}


class ConfigError(Exception):
    """Invalid or unreadable configuration."""


@dataclass
class Settings:
    host: str
    port: int
    public_url: str
    data_dir: str
    coin: str
    network: str
    blockcypher_token: str
    document_price: int
    anchor_fee: int
    treasury_address: str
    feed_size: int
    poll_interval: int
    anchor_claim_ttl: int
    required_confirmations: int
    rpc_url: str
    rpc_user: str
    rpc_password: str

    @property
    def network_name(self) -> str:
        return _NETWORK_NAMES.get(self.network, self.network)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def validate(self) -> None:
        if self.document_price <= 0:
            raise ConfigError("document_price must be positive")
        if self.anchor_fee <= 0:
            raise ConfigError("anchor_fee must be positive")
        if self.document_price < self.anchor_fee + DUST_LIMIT_SATS:
            raise ConfigError(
                f"document_price ({self.document_price}) must cover anchor_fee "
                f"({self.anchor_fee}) plus dust ({DUST_LIMIT_SATS})"
            )
        if self.feed_size < 1:
            raise ConfigError("feed_size must be at least 1")
        if self.required_confirmations < 1:
            raise ConfigError("required_confirmations must be at least 1")
        if self.anchor_claim_ttl < 1:
            raise ConfigError("anchor_claim_ttl must be positive")
        if not self.public_url.startswith(("http://", "https://")):
            raise ConfigError(f"public_url must be an http(s) URL, got {self.public_url!r}")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Build Settings from defaults, TOML file and environment."""
    config = dict(DEFAULT_CONFIG)

    explicit = config_path or os.environ.get("DOCPROOF_CONFIG")
    path = Path(explicit).expanduser() if explicit else _DEFAULT_DATA_DIR / "docproof.toml"
    if path.is_file():
        file_config = _read_toml(path)
        unknown = set(file_config) - set(DEFAULT_CONFIG)
        if unknown:
            log.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(sorted(unknown)))
        config.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})
    elif explicit:
        raise ConfigError(f"Config file not found: {path}")

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value

    kwargs: dict[str, Any] = {}
    for field in fields(Settings):
        value = config[field.name]
        if field.type == "int":
            try:
                value = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{field.name} must be an integer, got {value!r}") from e
        else:
            value = str(value)
        kwargs[field.name] = value

    settings = Settings(**kwargs)
    settings.public_url = settings.public_url.rstrip("/")
    settings.validate()
    return settings


def load_webhook_secret(data_dir: str | Path, create: bool = True) -> str:
    """Load the webhook capability token, generating it on first use.

    Priority: DOCPROOF_WEBHOOK_SECRET env var > <data_dir>/webhook_secret.
    Returns empty string if neither exists and ``create`` is False.
    """
    secret = os.environ.get("DOCPROOF_WEBHOOK_SECRET", "").strip()
    if secret:
        return secret

    secret_file = Path(data_dir).expanduser() / "webhook_secret"
    if secret_file.is_file():
        try:
            return secret_file.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"Cannot read webhook secret: {e}") from e

    if not create:
        return ""

    secret = secrets.token_urlsafe(32)
    secret_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(secret_file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(secret)
    log.info("Generated new webhook secret in %s", secret_file)
    return secret
