"""Course chat application configuration.

Loads settings from two YAML files:
  * lms.settings.yaml: non-secret configuration
  * lms.secrets.yaml: secrets (never committed)

Both paths can be overridden with the ``LMS_SETTINGS_FILE`` and
``LMS_SECRETS_FILE`` environment variables. A missing file is not an
error; the defaults below apply.
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

SETTINGS_FILE = Path(os.environ.get("LMS_SETTINGS_FILE", "lms.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("LMS_SECRETS_FILE", "lms.secrets.yaml"))


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
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    """DuckDB locations for the message store and the course directory."""
    chat_db_path:      str           = "chat.duckdb"
    directory_db_path: str           = "directory.duckdb"
    # Optional YAML file with users/courses/enrollments loaded on startup.
    seed_file:         Optional[str] = None


class ChatSettings(BaseModel):
    """Limits and timeouts of the real-time chat core."""
    edit_window_minutes:           int   = Field(default=15, ge=0)
    typing_timeout_seconds:        float = Field(default=3.0, gt=0)
    typing_sweep_interval_seconds: float = Field(default=1.0, gt=0)
    recent_messages_limit:         int   = Field(default=50, ge=1, le=100)
    max_content_length:            int   = Field(default=2000, ge=1)
    min_search_length:             int   = Field(default=2, ge=1)
    default_search_limit:          int   = Field(default=20, ge=1, le=100)
    auth_timeout_seconds:          float = Field(default=10.0, gt=0)
    # 0 = no limit
    max_connections_per_room:      int   = Field(default=0, ge=0)


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, chat_db=%s, edit_window=%smin)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.chat_db_path,
        app_settings.chat.edit_window_minutes,
    )
    if app_settings.secrets.jwt.secret_key == JWTSecrets().secret_key:
        logger.warning("Using the default JWT secret; set secrets.jwt.secret_key")
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace (or clear, with None) the process-wide settings."""
    global _config
    _config = config
