"""Messaging service configuration.

Loads settings from two YAML files:
  * messaging.settings.yaml  : non-secret configuration
  * messaging.secrets.yaml   : secrets (never committed)

The JWT secret can also be supplied through the ``MESSAGING_JWT_SECRET``
environment variable, which wins over the secrets file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("messaging.settings.yaml")
SECRETS_FILE  = Path("messaging.secrets.yaml")

JWT_SECRET_ENV = "MESSAGING_JWT_SECRET"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 10000
    reload:          bool      = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class AuthSettings(BaseModel):
    # Claims checked in order for the user identity.
    identity_claims: List[str] = Field(default_factory=lambda: ["userId", "_id", "sub"])
    leeway_seconds:  int       = 0


class MessagingSettings(BaseModel):
    max_content_length:     int   = Field(default=2000, ge=1)
    max_room_members:       int   = Field(default=50, ge=2)
    max_room_name_length:   int   = 100
    max_description_length: int   = 500
    typing_timeout_seconds: float = Field(default=5.0, gt=0)
    store_timeout_seconds:  float = Field(default=5.0, gt=0)
    history_page_size:      int   = 50
    max_history_page_size:  int   = 100


class StoreSettings(BaseModel):
    db_path: str = "messages.duckdb"


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    store:     StoreSettings     = Field(default_factory=StoreSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_store_path(config: AppConfig, settings_path: Path) -> None:
    """Resolve a relative DuckDB path against the settings file's directory."""
    db_path = config.store.db_path
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return
    config.store.db_path = str(settings_path.resolve().parent / db_path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        secrets_data.setdefault("jwt", {})["secret_key"] = env_secret

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    if settings_path.exists():
        _resolve_store_path(config, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, typing_timeout=%ss)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.messaging.typing_timeout_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with ``None``) the process-wide config."""
    global _config
    _config = config
