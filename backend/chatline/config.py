"""Chatline application configuration.

Loads settings from two YAML files:
  * chatline.settings.yaml: non-secret configuration
  * chatline.secrets.yaml: secrets (never committed)

Relative storage paths are resolved against the directory of the settings
file so the service can be started from any working directory.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatline.settings.yaml")
SECRETS_FILE  = Path("chatline.secrets.yaml")

IN_MEMORY_DB = ":memory:"


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
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    log_level:       str  = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Locations of the DuckDB files backing the stores."""
    chat_db_path:  str = "chat.duckdb"
    users_db_path: str = "users.duckdb"


class MessageSettings(BaseModel):
    default_page_size: int = 50
    max_page_size:     int = 100
    max_text_length:   int = 4000

    @field_validator("default_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page sizes must be at least 1")
        return value


class PresenceSettings(BaseModel):
    broadcast_enabled: bool = True


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60 * 24


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    messages: MessageSettings  = Field(default_factory=MessageSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(raw: str, base_dir: Path) -> str:
    if raw == IN_MEMORY_DB:
        return raw
    path = Path(raw)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


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

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    base_dir = settings_path.resolve().parent
    config.storage.chat_db_path = _resolve_db_path(config.storage.chat_db_path, base_dir)
    config.storage.users_db_path = _resolve_db_path(config.storage.users_db_path, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, chat_db=%s, users_db=%s)",
        config.server.host,
        config.server.port,
        config.storage.chat_db_path,
        config.storage.users_db_path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Replace the process-wide configuration (used by tests)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
