from .models import (
    AppConfig, RedisConfig, LoggingConfig, LockConfig, PresenceConfig,
    PubSubConfig, QueueConfig, ApiConfig
)
from pathlib import Path
from typing import Optional
import tomllib

from errors import ConfigError

def _deep_update(base: dict, updates: dict) -> dict:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _find_config() -> Optional[Path]:
    candidates = [
        Path.cwd() / "config.toml",
        Path(__file__).resolve().parents[2] / "config.toml",
    ]
    return next((p for p in candidates if p.exists()), None)


def load_settings(config_path: Optional[Path] = None) -> AppConfig:
    """
    Builds the configuration from environment defaults, then overlays the
    sections found in config.toml (if any).
    """
    config_path = config_path or _find_config()
    if not config_path:
        return AppConfig()

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to read {config_path}", e)

    base = AppConfig().model_dump()
    merged = _deep_update(base, raw)
    return AppConfig.model_validate(merged)


settings = load_settings()

def get_settings() -> AppConfig:
    return settings

def update_settings(new_settings: AppConfig):
    global settings
    settings = new_settings
