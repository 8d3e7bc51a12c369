"""OAuth token auto-refresh for the subscription credential.

Reads ``~/.claude/.credentials.json``, checks expiry, and refreshes through
the OAuth token endpoint when the access token is about to expire. Any
failure falls back to the existing token: a stale token that fails
downstream is preferred over blocking the run.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiohttp
from pydantic import BaseModel, ValidationError

from podwarden.auth.fallback import now_ms
from podwarden.config import get_settings
from podwarden.logger import logger

# Refresh when the token expires within this window
REFRESH_BUFFER_MS = 5 * 60 * 1000


class _TokenResponse(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_in: int


def _iso(ms: int | float) -> str:
    return datetime.fromtimestamp(ms / 1000, UTC).isoformat()


def _read_credentials(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read OAuth credentials", path=str(path), err=str(exc))
        return None
    return data if isinstance(data, dict) else None


def _write_credentials(path: Path, creds: dict[str, Any]) -> None:
    """Atomic write (tmp + rename), keeping the file private to the user."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(creds, indent=2) + "\n")
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


async def _refresh_access_token(oauth: dict[str, Any]) -> dict[str, Any] | None:
    """Exchange the refresh token. Returns the updated record or None."""
    s = get_settings()
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=s.auth.request_timeout)
        ) as session:
            async with session.post(
                s.auth.oauth_token_url,
                json={"grant_type": "refresh_token", "refresh_token": oauth["refreshToken"]},
            ) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    logger.error("OAuth token refresh failed", status=resp.status, body=body[:500])
                    return None
                data = _TokenResponse.model_validate(await resp.json(content_type=None))
    except (aiohttp.ClientError, TimeoutError, ValidationError, ValueError, KeyError) as exc:
        logger.error(
            "OAuth token refresh request error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None

    return {
        **oauth,
        "accessToken": data.access_token,
        "refreshToken": data.refresh_token or oauth["refreshToken"],
        "expiresAt": now_ms() + data.expires_in * 1000,
    }


async def ensure_fresh_token() -> str | None:
    """Return the current (or refreshed) access token, or None if unavailable."""
    path = get_settings().oauth_credentials_path
    if not path.exists():
        return None
    creds = _read_credentials(path)
    oauth = creds.get("claudeAiOauth") if creds else None
    if not isinstance(oauth, dict) or not oauth.get("accessToken"):
        return None

    expires_at = oauth.get("expiresAt")
    if not isinstance(expires_at, int | float) or isinstance(expires_at, bool):
        # No usable expiry: hand the token over and let the sandbox find out
        return oauth["accessToken"]

    if expires_at - now_ms() > REFRESH_BUFFER_MS:
        return oauth["accessToken"]

    logger.info("OAuth token expiring soon, refreshing", expires_at=_iso(expires_at))

    refreshed = await _refresh_access_token(oauth)
    if refreshed is None:
        logger.warning("Token refresh failed, using existing token")
        return oauth["accessToken"]

    assert creds is not None
    creds["claudeAiOauth"] = refreshed
    try:
        _write_credentials(path, creds)
    except OSError as exc:
        logger.error("Failed to persist refreshed OAuth credentials", err=str(exc))

    logger.info("OAuth token refreshed successfully", expires_at=_iso(refreshed["expiresAt"]))
    return refreshed["accessToken"]
