"""config/ — pydantic settings loaded from config.yaml and .env."""

from airassist.config.settings import ConfigError, Settings, get_settings, load_settings

__all__ = ["ConfigError", "Settings", "get_settings", "load_settings"]
