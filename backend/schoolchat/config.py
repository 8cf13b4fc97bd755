"""SchoolChat application configuration.

Loads settings from a single YAML file:
  * schoolchat.settings.yaml: server, chat and session-client settings

Every section has defaults so the service starts without a settings file.
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

SETTINGS_FILE = Path("schoolchat.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5051
    log_level:       str  = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class ChatSettings(BaseModel):
    """Server-side chat limits and storage."""
    page_size:          int = Field(default=20, ge=1)
    max_page_size:      int = Field(default=100, ge=1)
    max_content_length: int = Field(default=2000, ge=1)
    database:           str = ":memory:"


class ClientSettings(BaseModel):
    """Settings for the ChatSession client subsystem."""
    api_base_url:       str   = "http://localhost:5051"
    realtime_url:       str   = "ws://localhost:5051/ws/realtime"
    page_size:          int   = Field(default=20, ge=1)
    max_fetch_failures: int   = Field(default=3, ge=1)
    request_timeout:    float = Field(default=10.0, gt=0)


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load *schoolchat.settings.yaml* into an *AppSettings* object."""
    settings_data = _load_yaml(path or SETTINGS_FILE)

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, chat.database=%s, client.api=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.chat.database,
        app_settings.client.api_base_url,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    global _config
    _config = None
