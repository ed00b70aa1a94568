from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str
    rotation: FileRotationSettings


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str
    file: FileLoggingSettings
    # Per-logger overrides, e.g. {"aiohttp.access": "WARNING"}
    loggers: Mapping[str, str] = Field(default_factory=dict)


class StoreSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str
    auth_token: str = ""
    page_size: int = Field(default=10, ge=1)

    # None leaves deadlines to the caller.
    request_timeout_seconds: Optional[float] = None


class IdentitySettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: str = ""


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = "data/cache/local-cache.json"
    ttl_seconds: float = Field(default=300.0, gt=0)


class SyncSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Inline field edits (goals, notes, saved programs)
    edit_debounce_seconds: float = Field(default=2.0, ge=0)
    # Multi-section profile wizard background auto-save
    autosave_debounce_seconds: float = Field(default=5.0, ge=0)

    # "Service temporarily unavailable" handling
    unavailable_retries: int = Field(default=1, ge=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0)

    # Resources whose saves also retry once after a network failure
    retry_transient_resources: Sequence[str] = ("profileFields",)

    # Keep locally confirmed edits over records from a page requested before the confirmation.
    protect_confirmed_edits: bool = False


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    logging: LoggingSettings
    store: StoreSettings
    identity: IdentitySettings = IdentitySettings()
    cache: CacheSettings = CacheSettings()
    sync: SyncSettings = SyncSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "APP__"
    dotenv_path: Optional[str] = "data/.env"
