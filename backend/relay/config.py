"""Chat relay application configuration.

Loads settings from a single YAML file:
  * relay.settings.yaml: non-secret configuration (path overridable with
    the RELAY_SETTINGS environment variable)

A missing file is not an error; every section has defaults.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SETTINGS_ENV  = "RELAY_SETTINGS"


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
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )


class ChatSettings(BaseModel):
    """History and presence behaviour."""
    history_capacity:  int = Field(default=500, ge=1)
    default_page_size: int = Field(default=25, ge=1)
    anonymous_name:    str = "Anonymous"

    @field_validator("anonymous_name")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("anonymous_name must not be blank")
        return value


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load *AppSettings* from YAML.

    Args:
        settings_path: Explicit settings file. Defaults to $RELAY_SETTINGS,
            then ./relay.settings.yaml.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV, SETTINGS_FILE))

    app_settings = AppSettings(**_load_yaml(Path(settings_path)))
    logger.info(
        "Settings loaded (server=%s:%s, history_capacity=%s, default_page_size=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.chat.history_capacity,
        app_settings.chat.default_page_size,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Process-wide settings, loaded once."""
    return load_config()
