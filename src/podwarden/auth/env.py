"""Secret lookup from the project .env file.

Secrets are re-read on every call (never cached) because the Threads
refresh flow rewrites .env while the process runs. A key present in .env
wins over the process environment so a written-back token is picked up on
the next resolution even when a stale value was exported at startup.
"""

from __future__ import annotations

import os
from collections.abc import Iterable

from dotenv import dotenv_values, set_key

from podwarden.config import get_settings
from podwarden.logger import logger


def read_env_secrets(keys: Iterable[str]) -> dict[str, str]:
    """Return the non-empty values for *keys* from .env, then os.environ."""
    env_file = get_settings().env_file
    file_values: dict[str, str | None] = {}
    if env_file.exists():
        try:
            file_values = dotenv_values(env_file)
        except OSError as exc:
            logger.warning("Failed to read .env", path=str(env_file), err=str(exc))

    found: dict[str, str] = {}
    for key in keys:
        value = file_values.get(key) or os.environ.get(key)
        if value:
            found[key] = value
    return found


def write_env_secret(key: str, value: str) -> bool:
    """Persist ``key=value`` into .env. Returns False (and logs) on failure."""
    env_file = get_settings().env_file
    try:
        set_key(env_file, key, value, quote_mode="never")
    except OSError as exc:
        logger.warning("Failed to update .env", key=key, path=str(env_file), err=str(exc))
        return False
    return True
