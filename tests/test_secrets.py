"""Tests for credential resolution and the OAuth/fallback state machine."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from dotenv import dotenv_values

from podwarden.auth.env import read_env_secrets, write_env_secret
from podwarden.auth.fallback import FallbackStateStore, now_ms
from podwarden.auth.secrets import record_run_outcome, resolve_secrets

_OAUTH = "podwarden.auth.secrets.ensure_fresh_token"
_THREADS = "podwarden.auth.secrets.ensure_fresh_threads_token"

HOUR_MS = 3600 * 1000


@pytest.fixture
def store(settings):
    return FallbackStateStore(settings.auth_state_path, 5 * 3600)


def _set_fallback_since(store: FallbackStateStore, since: int | None) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps({"fallbackSince": since}))


def _patch_tokens(oauth: str | None, threads: str | None = None):
    return (
        patch(_OAUTH, AsyncMock(return_value=oauth)),
        patch(_THREADS, AsyncMock(return_value=threads)),
    )


class TestResolveSecrets:
    async def test_oauth_preferred(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=sk-fallback\n")
        p_oauth, p_threads = _patch_tokens("oauth-tok")
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.auth_method == "oauth"
        assert result.secrets == {"CLAUDE_CODE_OAUTH_TOKEN": "oauth-tok"}

    async def test_oauth_unavailable_enters_fallback(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=sk-fallback\n")
        p_oauth, p_threads = _patch_tokens(None)
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.auth_method == "fallback"
        assert result.secrets == {"ANTHROPIC_API_KEY": "sk-fallback"}
        assert store.read().fallback_since is not None

    async def test_in_window_skips_oauth(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=sk-fallback\n")
        since = now_ms() - HOUR_MS
        _set_fallback_since(store, since)
        oauth = AsyncMock(return_value="oauth-tok")
        with patch(_OAUTH, oauth), patch(_THREADS, AsyncMock(return_value=None)):
            for _ in range(3):
                result = await resolve_secrets(store)
                assert result.auth_method == "fallback"
                assert result.secrets == {"ANTHROPIC_API_KEY": "sk-fallback"}

        oauth.assert_not_awaited()
        assert store.read().fallback_since == since

    async def test_expired_window_cleared_and_oauth_retried(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=sk-fallback\n")
        _set_fallback_since(store, now_ms() - 6 * HOUR_MS)
        p_oauth, p_threads = _patch_tokens("oauth-tok")
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.auth_method == "oauth"
        assert store.read().fallback_since is None

    async def test_window_without_fallback_key_tries_oauth(self, settings, store):
        _set_fallback_since(store, now_ms() - HOUR_MS)
        p_oauth, p_threads = _patch_tokens("oauth-tok")
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.secrets["CLAUDE_CODE_OAUTH_TOKEN"] == "oauth-tok"
        assert store.read().fallback_since is None

    async def test_unwritable_state_still_resolves(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=sk-fallback\n")
        store.path.mkdir(parents=True)
        p_oauth, p_threads = _patch_tokens(None)
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.auth_method == "fallback"
        assert result.secrets == {"ANTHROPIC_API_KEY": "sk-fallback"}

    async def test_no_credentials_at_all(self, settings, store):
        p_oauth, p_threads = _patch_tokens(None)
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.auth_method == "oauth"
        assert "CLAUDE_CODE_OAUTH_TOKEN" not in result.secrets
        assert "ANTHROPIC_API_KEY" not in result.secrets
        assert store.read().fallback_since is None

    async def test_never_both_credentials(self, settings, store, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY_FALLBACK", "sk-fallback")
        for oauth in ("oauth-tok", None):
            p_oauth, p_threads = _patch_tokens(oauth)
            with p_oauth, p_threads:
                result = await resolve_secrets(store)
            keys = set(result.secrets) & {"CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY"}
            assert len(keys) == 1
            assert "ANTHROPIC_API_KEY_FALLBACK" not in result.secrets

    async def test_passthrough_and_refreshed_threads_token(self, settings, store):
        settings.env_file.write_text(
            "THREADS_ACCESS_TOKEN=t-old\nTHREADS_USER_ID=42\nUNRELATED=x\n"
        )
        p_oauth, p_threads = _patch_tokens("oauth-tok", threads="t-new")
        with p_oauth, p_threads:
            result = await resolve_secrets(store)

        assert result.secrets["THREADS_ACCESS_TOKEN"] == "t-new"
        assert result.secrets["THREADS_USER_ID"] == "42"
        assert "UNRELATED" not in result.secrets

    async def test_threads_refreshed_in_fallback_mode_too(self, settings, store):
        settings.env_file.write_text("ANTHROPIC_API_KEY_FALLBACK=k\nTHREADS_ACCESS_TOKEN=t-old\n")
        _set_fallback_since(store, now_ms())
        threads = AsyncMock(return_value="t-new")
        with patch(_OAUTH, AsyncMock(return_value=None)), patch(_THREADS, threads):
            result = await resolve_secrets(store)

        threads.assert_awaited_once()
        assert result.secrets["THREADS_ACCESS_TOKEN"] == "t-new"


class TestRecordRunOutcome:
    def test_rate_limit_enters_fallback(self, store):
        record_run_outcome(
            auth_method="oauth", rate_limited=True, exited_cleanly=False, store=store
        )
        assert store.read().fallback_since is not None

    def test_clean_oauth_run_clears(self, store):
        _set_fallback_since(store, now_ms())
        record_run_outcome(
            auth_method="oauth", rate_limited=False, exited_cleanly=True, store=store
        )
        assert store.read().fallback_since is None

    def test_clean_fallback_run_keeps_window(self, store):
        _set_fallback_since(store, now_ms())
        record_run_outcome(
            auth_method="fallback", rate_limited=False, exited_cleanly=True, store=store
        )
        assert store.read().fallback_since is not None

    def test_failed_oauth_run_leaves_state(self, store):
        record_run_outcome(
            auth_method="oauth", rate_limited=False, exited_cleanly=False, store=store
        )
        assert not store.path.exists()


class TestEnvSecrets:
    def test_env_file_wins_over_process_env(self, settings, monkeypatch):
        monkeypatch.setenv("THREADS_USER_ID", "from-proc")
        settings.env_file.write_text("THREADS_USER_ID=from-file\n")
        assert read_env_secrets(["THREADS_USER_ID"]) == {"THREADS_USER_ID": "from-file"}

    def test_empty_values_dropped(self, settings):
        settings.env_file.write_text("THREADS_USER_ID=\n")
        assert read_env_secrets(["THREADS_USER_ID", "MISSING"]) == {}

    def test_missing_file_uses_process_env(self, settings, monkeypatch):
        monkeypatch.setenv("THREADS_USER_ID", "7")
        assert read_env_secrets(["THREADS_USER_ID"]) == {"THREADS_USER_ID": "7"}

    def test_write_back_preserves_other_lines(self, settings):
        settings.env_file.write_text("A=1\nTHREADS_ACCESS_TOKEN=old\n")
        assert write_env_secret("THREADS_ACCESS_TOKEN", "new") is True
        assert dotenv_values(settings.env_file) == {"A": "1", "THREADS_ACCESS_TOKEN": "new"}
