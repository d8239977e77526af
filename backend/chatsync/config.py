"""chatsync application configuration.

Loads settings from a single YAML file:
  * chatsync.settings.yaml: non-secret configuration

Sections:
  * server: bind address for the HTTP/WebSocket surface
  * logging: root log level
  * store: DuckDB document store location
  * sync: history size, retry policy, default listener list
  * reactions: emoji palette offered to the UI
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

SETTINGS_FILE = Path(os.environ.get("CHATSYNC_SETTINGS", "chatsync.settings.yaml"))

DEFAULT_REACTIONS = [
    "😠",  # Angry face
    "🤨",  # Face with raised eyebrow
    "🫤",  # Face with diagonal mouth
    "😔",  # Pensive face
    "🙃",  # Upside-down face
    "😶",  # Face without mouth
    "😂",  # Face with tears of joy
    "💖",  # Sparkling heart
]


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
    host:   str  = "0.0.0.0"
    port:   int  = 8000
    reload: bool = False


class LoggingSettings(BaseModel):
    level: str = "info"


class StoreSettings(BaseModel):
    db_path: str = "chatsync.duckdb"


class SyncSettings(BaseModel):
    """Per-room synchronization policy."""
    history_limit:               int       = Field(default=25, ge=1)
    history_max_attempts:        int       = Field(default=3, ge=1)
    history_retry_delay_seconds: float     = Field(default=0.5, ge=0)
    default_room_ids:            List[str] = Field(default_factory=lambda: ["main", "second"])
    default_selected_room_id:    str       = "main"

    @field_validator("default_room_ids")
    @classmethod
    def _dedupe_room_ids(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(room_id for room_id in value if room_id))


class ReactionSettings(BaseModel):
    palette: List[str] = Field(default_factory=lambda: list(DEFAULT_REACTIONS))


class AppSettings(BaseModel):
    server:    ServerSettings   = Field(default_factory=ServerSettings)
    logging:   LoggingSettings  = Field(default_factory=LoggingSettings)
    store:     StoreSettings    = Field(default_factory=StoreSettings)
    sync:      SyncSettings     = Field(default_factory=SyncSettings)
    reactions: ReactionSettings = Field(default_factory=ReactionSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load *AppSettings* from the YAML settings file."""
    settings_data = _load_yaml(path or SETTINGS_FILE)

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, store=%s, history_limit=%d, default_rooms=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.db_path,
        app_settings.sync.history_limit,
        app_settings.sync.default_room_ids,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings (for testing)."""
    global _config
    _config = None
