"""Showtime chat application configuration.

Loads settings from two YAML files:
  * showtime.settings.yaml: non-secret configuration
  * showtime.secrets.yaml: secrets (never committed)

Both files are optional. Missing files fall back to the model defaults,
which are enough to run the chat service locally against DuckDB.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("showtime.settings.yaml")
SECRETS_FILE  = Path("showtime.secrets.yaml")


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


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 5000


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    token_expire_minutes: int = 60 * 24


class ChatSettings(BaseModel):
    """Behaviour of the real-time chat service."""
    global_room_id:       str  = "globalChat"
    history_limit:        int  = Field(default=50, ge=1)
    max_history_limit:    int  = Field(default=100, ge=1)
    reject_self_messages: bool = True

    @field_validator("global_room_id")
    @classmethod
    def _no_direct_prefix(cls, value: str) -> str:
        # Direct rooms are named "room_<a>_<b>"; keep the namespaces apart.
        if not value or value.startswith("room_"):
            raise ValueError("global_room_id must be non-empty and not start with 'room_'")
        return value


class StoreSettings(BaseModel):
    """Where chat messages are persisted."""
    backend: Literal["duckdb", "memory"] = "duckdb"
    db_path: str = "chat_messages.duckdb"


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, store=%s, global_room=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.backend,
        app_settings.chat.global_room_id,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(settings: AppSettings) -> None:
    """Replace the process-wide settings (tests, embedding apps)."""
    global _config
    _config = settings


def reset_config() -> None:
    global _config
    _config = None
