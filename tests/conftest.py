"""Shared test fixtures for podwarden."""

from __future__ import annotations

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "home_dir",
        "groups_dir",
        "data_dir",
        "env_file",
        "auth_state_path",
        "oauth_credentials_path",
        "threads_state_path",
        "mount_allowlist_path",
        "container_timeout",
        "idle_timeout",
        "fallback_duration",
        "timezone",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, auth, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(container=ContainerConfig(max_output_size=100))
        s = make_settings(project_root=tmp_path, groups_dir=tmp_path / "groups")
    """
    from podwarden.config import (
        AuthConfig,
        ContainerConfig,
        LoggingConfig,
        SchedulerConfig,
        Settings,
    )

    # Separate cached properties from model fields
    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerConfig(),
        "logging": LoggingConfig(),
        "auth": AuthConfig(),
        "scheduler": SchedulerConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_rooted_settings(root, **overrides):
    """Settings whose every path lives under *root* (a tmp dir)."""
    base = {
        "project_root": root,
        "home_dir": root / "home",
        "groups_dir": root / "groups",
        "data_dir": root / "data",
        "timezone": "UTC",
    }
    base.update(overrides)
    return make_settings(**base)


# Secrets read from the process environment as a fallback to .env
_SECRET_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_API_KEY_FALLBACK",
    "CLAUDE_CODE_OAUTH_TOKEN",
    "THREADS_ACCESS_TOKEN",
    "THREADS_USER_ID",
)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton rooted in tmp_path.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env from the real project, no writes outside the test's tmp dir.

    Tests that mock ``get_settings()`` at the call site are unaffected; their
    mock takes precedence over the cached singleton.
    """
    safe = make_rooted_settings(tmp_path)
    monkeypatch.setattr("podwarden.config._settings", safe)
    return safe


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep host credentials and LOG_LEVEL out of every test."""
    for var in (*_SECRET_ENV_VARS, "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def _docker_runtime(monkeypatch):
    """Pin the runtime so tests never query the host for a container CLI."""
    from podwarden.runtime import ContainerRuntime

    monkeypatch.setattr("podwarden.runtime._runtime", ContainerRuntime(name="docker", cli="docker"))


@pytest.fixture(autouse=True)
def _reset_mount_allowlist():
    from podwarden.mount_security import _reset_cache

    _reset_cache()
    yield
    _reset_cache()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(reset_settings):
    """The per-test Settings object (mutable; tweak fields in place)."""
    return reset_settings
