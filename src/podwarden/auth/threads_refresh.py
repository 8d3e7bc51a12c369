"""Threads long-lived token auto-refresh.

Long-lived Threads tokens last 60 days and can be refreshed once they are a
day old. The token is checked on every container spawn and refreshed seven
days before its assumed expiry. A refreshed token is written both to the
state file and back into .env so it survives restarts.

Refresh endpoint::

    GET https://graph.threads.net/refresh_access_token
        ?grant_type=th_refresh_token&access_token=<long-lived-token>
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import aiohttp
from pydantic import BaseModel, ValidationError

from podwarden.auth.env import read_env_secrets, write_env_secret
from podwarden.auth.fallback import now_ms
from podwarden.config import get_settings
from podwarden.logger import logger

TOKEN_ENV_KEY = "THREADS_ACCESS_TOKEN"

DAY_MS = 24 * 60 * 60 * 1000
REFRESH_BUFFER_MS = 7 * DAY_MS
ASSUMED_VALIDITY_MS = 60 * DAY_MS


@dataclass
class ThreadsTokenState:
    accessToken: str  # noqa: N815 (on-disk field names)
    expiresAt: int  # noqa: N815
    lastRefreshAt: int  # noqa: N815


class _RefreshResponse(BaseModel):
    access_token: str
    token_type: str | None = None
    expires_in: int


def _read_state(path: Path) -> ThreadsTokenState | None:
    try:
        raw = json.loads(path.read_text())
        return ThreadsTokenState(
            accessToken=str(raw["accessToken"]),
            expiresAt=int(raw["expiresAt"]),
            lastRefreshAt=int(raw["lastRefreshAt"]),
        )
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Unreadable Threads token state, reseeding", err=str(exc))
        return None


def _write_state(path: Path, state: ThreadsTokenState) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(state), indent=2) + "\n")
    os.replace(tmp, path)


async def _refresh_token(current_token: str) -> _RefreshResponse | None:
    s = get_settings()
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=s.auth.request_timeout)
        ) as session:
            async with session.get(
                s.auth.threads_refresh_url,
                params={"grant_type": "th_refresh_token", "access_token": current_token},
            ) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    logger.error(
                        "Threads token refresh failed", status=resp.status, body=body[:500]
                    )
                    return None
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
        logger.error(
            "Threads token refresh request error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None

    try:
        parsed = _RefreshResponse.model_validate(data)
    except ValidationError:
        logger.error("Threads token refresh returned no access_token", data=str(data)[:500])
        return None
    if not parsed.access_token:
        logger.error("Threads token refresh returned no access_token", data=str(data)[:500])
        return None
    return parsed


async def ensure_fresh_threads_token() -> str | None:
    """Return the current or refreshed Threads token, or None if not configured."""
    token_from_env = read_env_secrets([TOKEN_ENV_KEY]).get(TOKEN_ENV_KEY)
    if not token_from_env:
        return None

    path = get_settings().threads_state_path
    now = now_ms()
    state = _read_state(path)

    # First run, or the token was replaced by hand: start a fresh window
    if state is None or state.accessToken != token_from_env:
        state = ThreadsTokenState(
            accessToken=token_from_env,
            expiresAt=now + ASSUMED_VALIDITY_MS,
            lastRefreshAt=now,
        )
        try:
            _write_state(path, state)
        except OSError as exc:
            logger.warning("Failed to seed Threads token state", err=str(exc))
        return token_from_env

    if state.expiresAt - now > REFRESH_BUFFER_MS:
        return state.accessToken

    logger.info(
        "Threads token expiring soon, refreshing",
        expires_at=datetime.fromtimestamp(state.expiresAt / 1000, UTC).isoformat(),
        days_left=round((state.expiresAt - now) / DAY_MS),
    )

    refreshed = await _refresh_token(state.accessToken)
    if refreshed is None:
        logger.warning("Threads token refresh failed, using existing token")
        return state.accessToken

    new_state = ThreadsTokenState(
        accessToken=refreshed.access_token,
        expiresAt=now + refreshed.expires_in * 1000,
        lastRefreshAt=now,
    )
    try:
        _write_state(path, new_state)
    except OSError as exc:
        logger.error("Failed to persist Threads token state", err=str(exc))
    write_env_secret(TOKEN_ENV_KEY, refreshed.access_token)

    logger.info(
        "Threads token refreshed successfully",
        expires_at=datetime.fromtimestamp(new_state.expiresAt / 1000, UTC).isoformat(),
        days_valid=round(refreshed.expires_in / 86400),
    )
    return refreshed.access_token
