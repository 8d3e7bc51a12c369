"""Credential provisioning: OAuth/fallback selection and token refresh flows."""

from podwarden.auth.fallback import FallbackState, FallbackStateStore, default_store
from podwarden.auth.oauth_refresh import ensure_fresh_token
from podwarden.auth.secrets import record_run_outcome, resolve_secrets
from podwarden.auth.threads_refresh import ensure_fresh_threads_token

__all__ = [
    "FallbackState",
    "FallbackStateStore",
    "default_store",
    "ensure_fresh_threads_token",
    "ensure_fresh_token",
    "record_run_outcome",
    "resolve_secrets",
]
