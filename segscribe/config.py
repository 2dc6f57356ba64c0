"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Optional

from .models import AudioQuality, Config

APP_DIR = (Path.home() / ".segscribe").expanduser()
CONFIG_PATH = APP_DIR / "config.json"
LEDGER_PATH = APP_DIR / "retry_ledger.json"
API_KEY_ENV = "OPENAI_API_KEY"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    config = Config(**payload)
    _validate(config)
    return config


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    _validate(config)
    save_config(config)
    return config


def resolve_api_key(config: Config) -> Optional[str]:
    """Return the bearer token for the remote backend, environment first."""

    return os.environ.get(API_KEY_ENV) or config.openai_api_key or None


def _validate(config: Config) -> None:
    try:
        AudioQuality(config.quality)
    except ValueError as exc:
        choices = ", ".join(q.value for q in AudioQuality)
        raise ConfigError(f"Unknown audio quality '{config.quality}' (expected one of {choices})") from exc
    if config.segment_seconds <= 0:
        raise ConfigError("segment_seconds must be positive")
    if config.max_remote_attempts < 1:
        raise ConfigError("max_remote_attempts must be at least 1")
    if config.backoff_unit < 0:
        raise ConfigError("backoff_unit cannot be negative")
    if config.reachability_interval <= 0:
        raise ConfigError("reachability_interval must be positive")
