"""Configuration schema and loader."""

from planner_sync.config.loader import YamlConfigLoader
from planner_sync.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]
