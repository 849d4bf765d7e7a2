"""Configuration loading utilities for MirrorChat.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable MIRROR_CHAT_CONFIG
3. Fallback to "config/default.yaml"

It also supports overrides from environment variables with prefix
``MIRROR_CHAT__`` (e.g., MIRROR_CHAT__CHAT__REPLY_DELAY_SECONDS=0.5).

Store credentials have no defaults: they are supplied at process start,
either in the YAML file or through the environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "MIRROR_CHAT__"
ENV_CONFIG_PATH = "MIRROR_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"
PLACEHOLDER_VALUE = "REPLACE_ME"


class ConfigError(RuntimeError):
    """Raised for unreadable configuration or invalid settings."""


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix MIRROR_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., MIRROR_CHAT__STORE__FIREBASE__DATABASE_URL -> cfg["store"]["firebase"]["database_url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def default_config() -> Dict[str, Any]:
    return {
        "logging": {"level": "INFO"},
        "chat": {"reply_delay_seconds": 1.2, "recent_limit": 50},
        "store": {"backend": "memory", "namespace": "chats"},
    }


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for MirrorChat.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``MIRROR_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(default_config())

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(cfg)


def configure_logging(cfg: Mapping[str, Any]) -> None:
    level_name = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigError(f"logging.level: unknown level {level_name!r}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


# -----------------------------
# Typed sections
# -----------------------------
@dataclass(frozen=True)
class ChatSettings:
    reply_delay_seconds: float = 1.2
    recent_limit: int = 50

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ChatSettings":
        section = cfg.get("chat") or {}
        try:
            delay = float(section.get("reply_delay_seconds", cls.reply_delay_seconds))
        except (TypeError, ValueError):
            raise ConfigError(f"chat.reply_delay_seconds must be a number, got {section.get('reply_delay_seconds')!r}") from None
        limit = section.get("recent_limit", cls.recent_limit)
        if delay < 0:
            raise ConfigError("chat.reply_delay_seconds must be >= 0")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ConfigError(f"chat.recent_limit must be a positive integer, got {limit!r}")
        return cls(reply_delay_seconds=delay, recent_limit=limit)


@dataclass(frozen=True)
class FirebaseSettings:
    """Realtime Database connection fields, as found in a web app's config."""

    api_key: str
    auth_domain: str
    database_url: str
    project_id: str
    storage_bucket: str
    messaging_sender_id: str
    app_id: str
    auth_token: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "FirebaseSettings":
        data = data or {}
        required = [f.name for f in fields(cls) if f.name != "auth_token"]
        missing = [
            name for name in required
            if data.get(name) in (None, "") or str(data.get(name)) == PLACEHOLDER_VALUE
        ]
        if missing:
            raise ConfigError(f"store.firebase is missing: {', '.join(missing)}")
        token = data.get("auth_token")
        return cls(
            **{name: str(data[name]) for name in required},
            auth_token=str(token) if token else None,
        )


BACKENDS = ("memory", "disk", "firebase")


@dataclass(frozen=True)
class StoreSettings:
    backend: str = "memory"
    namespace: str = "chats"
    data_dir: str = "data"
    firebase: Optional[FirebaseSettings] = None

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "StoreSettings":
        section = cfg.get("store") or {}
        backend = str(section.get("backend", cls.backend)).lower()
        if backend not in BACKENDS:
            raise ConfigError(f"store.backend must be one of {', '.join(BACKENDS)}, got {backend!r}")
        firebase = FirebaseSettings.from_mapping(section.get("firebase")) if backend == "firebase" else None
        return cls(
            backend=backend,
            namespace=str(section.get("namespace", cls.namespace)),
            data_dir=str(section.get("data_dir", cls.data_dir)),
            firebase=firebase,
        )
