from .models import (
    FacadeConfig, RedisConfig, LoggingConfig, LockConfig, QueueConfig, ThrottleConfig,
    MessageQueueConfig, ThrottleQueueConfig
)
from pathlib import Path
from typing import Optional
import tomllib

from pydantic import ValidationError

from ...errors import ConfigError


def _deep_update(base: dict, updates: dict) -> dict:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: Optional[Path] = None) -> FacadeConfig:
    """
    Builds a FacadeConfig from defaults, environment variables and, if it
    exists, a TOML file whose tables mirror the config sections.
    """
    candidates = [path] if path else [Path.cwd() / "config.toml"]
    config_path = next((p for p in candidates if p.exists()), None)
    if not config_path:
        return FacadeConfig()

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {config_path}", e) from e

    base = FacadeConfig().model_dump()
    merged = _deep_update(base, raw)
    try:
        return FacadeConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {config_path}", e) from e


settings = load_config()

def get_settings() -> FacadeConfig:
    return settings

def update_settings(new_settings: FacadeConfig):
    global settings
    settings = new_settings
