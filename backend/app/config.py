"""Roomchat application configuration.

Loads settings from two YAML files:
  * roomchat.settings.yaml: non-secret configuration
  * roomchat.secrets.yaml: secrets (never committed)

Lookup order for the settings file:
  1. explicit ``settings_path`` argument
  2. ``ROOMCHAT_SETTINGS`` environment variable
  3. ./config/roomchat.settings.yaml
  4. ./roomchat.settings.yaml

The secrets file is looked up next to the settings file.
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

SETTINGS_FILENAME = "roomchat.settings.yaml"
SECRETS_FILENAME  = "roomchat.secrets.yaml"
SETTINGS_ENV_VAR  = "ROOMCHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _find_settings_file() -> Path:
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    if env_path:
        return Path(env_path)
    config_dir_file = Path("config") / SETTINGS_FILENAME
    if config_dir_file.exists():
        return config_dir_file
    return Path(SETTINGS_FILENAME)


def _resolve_data_path(raw: str, settings_path: Path) -> str:
    """Resolve a relative data path against the project root.

    When the settings file lives in a ``config/`` directory the project
    root is its parent; otherwise paths are relative to the settings file.
    ``:memory:`` is passed through untouched.
    """
    if raw == ":memory:":
        return raw
    candidate = Path(raw)
    if candidate.is_absolute():
        return str(candidate)
    settings_dir = settings_path.resolve().parent
    base = settings_dir.parent if settings_dir.name == "config" else settings_dir
    return str(base / candidate)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    password_pepper: str = ""


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class SecuritySettings(BaseModel):
    password_hash_scheme: str = "pbkdf2_sha256"


class ServerSettings(BaseModel):
    host:            str = "0.0.0.0"
    port:            int = 8000
    send_queue_size: int = 1000


class LoggingSettings(BaseModel):
    level:         str  = "info"
    audit_enabled: bool = True
    audit_path:    str  = "audit_logs.duckdb"


class StoreSettings(BaseModel):
    db_path: str = "roomchat.duckdb"


class RoomsSettings(BaseModel):
    global_room_id:     str       = "global"
    admins:             List[str] = Field(default_factory=list)
    max_pins:           int       = 20
    max_announcements:  int       = 5
    invite_ttl_minutes: int       = 60 * 24


class HistorySettings(BaseModel):
    page_size:     int = 50
    max_page_size: int = 100
    search_limit:  int = 50

    @field_validator("page_size", "max_page_size", "search_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class RateLimitSettings(BaseModel):
    window_seconds: float = 5.0
    max_messages:   int   = 10


class MessageSettings(BaseModel):
    max_text_length:   int = 4000
    max_poll_question: int = 300
    max_poll_option:   int = 200


class ModerationSettings(BaseModel):
    banned_words: List[str] = Field(default_factory=list)
    mask_char:    str       = "*"


class LinkPreviewSettings(BaseModel):
    enabled:             bool  = True
    timeout_seconds:     float = 5.0
    max_bytes:           int   = 512 * 1024
    user_agent:          str   = "roomchat-link-preview/1.0"
    block_private_hosts: bool  = True


class AppConfig(BaseModel):
    server:       ServerSettings      = Field(default_factory=ServerSettings)
    security:     SecuritySettings    = Field(default_factory=SecuritySettings)
    logging:      LoggingSettings     = Field(default_factory=LoggingSettings)
    store:        StoreSettings       = Field(default_factory=StoreSettings)
    rooms:        RoomsSettings       = Field(default_factory=RoomsSettings)
    history:      HistorySettings     = Field(default_factory=HistorySettings)
    rate_limit:   RateLimitSettings   = Field(default_factory=RateLimitSettings)
    messages:     MessageSettings     = Field(default_factory=MessageSettings)
    moderation:   ModerationSettings  = Field(default_factory=ModerationSettings)
    link_preview: LinkPreviewSettings = Field(default_factory=LinkPreviewSettings)
    secrets:      Secrets             = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else _find_settings_file()
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(settings_path.parent / SECRETS_FILENAME)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.store.db_path = _resolve_data_path(config.store.db_path, settings_path)
    config.logging.audit_path = _resolve_data_path(config.logging.audit_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, audit_enabled=%s)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.logging.audit_enabled,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with ``None``) the cached configuration."""
    global _config
    _config = config
