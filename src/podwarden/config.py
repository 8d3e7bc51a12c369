"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Environment variables override it
using ``__`` as the nested delimiter (e.g. ``CONTAINER__IMAGE``).

Secrets (API keys, tokens) are not settings fields. They live in .env and
are re-read on every credential resolution by :mod:`podwarden.auth.env`;
the token refresh flows rewrite that file while the process is running.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from podwarden.config import get_settings

    s = get_settings()
    print(s.container.image)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    image: str = "podwarden-agent:latest"
    timeout_ms: int = 1800000  # 30 minutes
    idle_timeout_ms: int = 1800000  # 30 minutes
    max_output_size: int = 10485760  # 10MB
    runtime: str | None = None  # "docker" | "apple" | None (auto-detect)
    # Mount container/agent-runner/src over the image's baked-in copy
    dev_mount: bool = False

    @field_validator("max_output_size")
    @classmethod
    def validate_max_output_size(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_output_size must not be negative")
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class AuthConfig(_StrictModel):
    """Endpoints and windows for the credential refresh flows."""

    oauth_token_url: str = "https://claude.ai/oauth/token"
    threads_refresh_url: str = "https://graph.threads.net/refresh_access_token"
    fallback_hours: float = 5.0
    request_timeout: float = 30.0  # seconds, per refresh HTTP call

    @field_validator("fallback_hours")
    @classmethod
    def validate_fallback_hours(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("fallback_hours must be positive")
        return v


class SchedulerConfig(_StrictModel):
    timezone: str = ""  # empty → auto-detect


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    logging: LoggingConfig = LoggingConfig()
    auth: AuthConfig = AuthConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    # Sentinels (class-level, not fields): must match the agent-runner
    OUTPUT_START_MARKER: ClassVar[str] = "---PODWARDEN_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---PODWARDEN_OUTPUT_END---"

    # Fixed identity of the non-root user baked into the agent image
    CONTAINER_UID: ClassVar[int] = 1000
    CONTAINER_HOME: ClassVar[str] = "/home/node"

    # Hard timeout must leave room for the idle window plus this grace
    IDLE_GRACE_SECONDS: ClassVar[float] = 30.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.container.idle_timeout_ms / 1000

    @cached_property
    def fallback_duration(self) -> float:
        """Fallback window in seconds."""
        return self.auth.fallback_hours * 3600

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def home_dir(self) -> Path:
        return Path(os.environ.get("HOME") or Path.home())

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def env_file(self) -> Path:
        return self.project_root / ".env"

    @cached_property
    def auth_state_path(self) -> Path:
        return self.data_dir / "auth-state.json"

    @cached_property
    def oauth_credentials_path(self) -> Path:
        return self.home_dir / ".claude" / ".credentials.json"

    @cached_property
    def threads_state_path(self) -> Path:
        return self.data_dir / "threads-token-state.json"

    @cached_property
    def mount_allowlist_path(self) -> Path:
        return self.home_dir / ".config" / "podwarden" / "mount-allowlist.json"


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink: fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
