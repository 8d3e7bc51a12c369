"""Credential resolution for a sandbox run.

Auth priority:
  1. CLAUDE_CODE_OAUTH_TOKEN (subscription, no per-token cost)
  2. ANTHROPIC_API_KEY (prepaid fallback, read from ANTHROPIC_API_KEY_FALLBACK)

Only one of the two is ever passed to a sandbox: the agent SDK prefers
ANTHROPIC_API_KEY whenever both are present, which would silently bill the
prepaid key while a subscription is available.

Fallback state machine (two states, persisted by
:class:`~podwarden.auth.fallback.FallbackStateStore`):

- OAuth → Fallback when no OAuth token can be obtained, or when a run on
  OAuth hits a rate limit.
- Fallback → OAuth when the window has elapsed (checked at the start of
  every resolution), or after an OAuth run finishes without a rate limit.
"""

from __future__ import annotations

import math

from podwarden.auth.env import read_env_secrets
from podwarden.auth.fallback import FallbackStateStore, default_store, now_ms
from podwarden.auth.oauth_refresh import ensure_fresh_token
from podwarden.auth.threads_refresh import TOKEN_ENV_KEY, ensure_fresh_threads_token
from podwarden.logger import logger
from podwarden.types import AuthMethod, SecretsResult

OAUTH_TOKEN_KEY = "CLAUDE_CODE_OAUTH_TOKEN"
API_KEY_KEY = "ANTHROPIC_API_KEY"
FALLBACK_KEY_KEY = "ANTHROPIC_API_KEY_FALLBACK"

# Forwarded to the sandbox unchanged
PASSTHROUGH_KEYS = ("THREADS_ACCESS_TOKEN", "THREADS_USER_ID")


async def resolve_secrets(store: FallbackStateStore | None = None) -> SecretsResult:
    """Pick the model credential and collect passthrough secrets."""
    store = store or default_store()
    values = read_env_secrets([FALLBACK_KEY_KEY, *PASSTHROUGH_KEYS])
    fallback_key = values.pop(FALLBACK_KEY_KEY, None)
    secrets = dict(values)
    auth_method: AuthMethod = "oauth"

    state = store.read()
    now = now_ms()

    if state.in_window(now, store.duration_ms) and fallback_key:
        secrets[API_KEY_KEY] = fallback_key
        auth_method = "fallback"
        logger.info(
            "Auth: in fallback mode, using prepaid API key",
            remaining_minutes=math.ceil(state.remaining_ms(now, store.duration_ms) / 60000),
        )
    else:
        if state.fallback_since is not None:
            # Window elapsed (or no key to fall back to): give OAuth another try
            store.clear()

        oauth_token = await ensure_fresh_token()
        if oauth_token:
            secrets[OAUTH_TOKEN_KEY] = oauth_token
            logger.info("Auth: using subscription OAuth token")
        elif fallback_key:
            secrets[API_KEY_KEY] = fallback_key
            auth_method = "fallback"
            store.enter()
            logger.info("Auth: OAuth unavailable, using fallback prepaid API key")
        else:
            logger.warning(
                "Auth: no OAuth token and no fallback key, sandbox will run without "
                "a model credential. Run 'claude' to authenticate or set "
                f"{FALLBACK_KEY_KEY} in .env"
            )

    threads_token = await ensure_fresh_threads_token()
    if threads_token:
        secrets[TOKEN_ENV_KEY] = threads_token

    return SecretsResult(secrets=secrets, auth_method=auth_method)


def record_run_outcome(
    *,
    auth_method: AuthMethod,
    rate_limited: bool,
    exited_cleanly: bool,
    store: FallbackStateStore | None = None,
) -> None:
    """Apply the post-run transition.

    A latched rate limit enters fallback whatever the exit status. A clean
    exit on OAuth without a rate limit confirms OAuth works and clears any
    stale fallback left by an earlier failure.
    """
    store = store or default_store()
    if rate_limited:
        store.enter()
    elif exited_cleanly and auth_method == "oauth":
        store.clear()
