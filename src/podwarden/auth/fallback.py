"""Persisted OAuth → prepaid-key fallback state.

A single record ``{"fallbackSince": <epoch ms> | null}`` on disk. The record
is re-read on every query; no copy is kept in memory between runs, so a
transition written by one run is seen by the next resolution.

Concurrent runs may race on the read-modify-write. The worst outcome is a
redundant OAuth attempt, never a corrupt file (writes are atomic renames).
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path

from podwarden.config import get_settings
from podwarden.logger import logger


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FallbackState:
    fallback_since: int | None = None

    def in_window(self, now: int, duration_ms: int) -> bool:
        return self.fallback_since is not None and now - self.fallback_since < duration_ms

    def remaining_ms(self, now: int, duration_ms: int) -> int:
        if self.fallback_since is None:
            return 0
        return max(0, duration_ms - (now - self.fallback_since))


class FallbackStateStore:
    """Read/transition/write access to the fallback record."""

    def __init__(self, path: Path, duration_seconds: float) -> None:
        self.path = path
        self.duration_ms = int(duration_seconds * 1000)

    def read(self) -> FallbackState:
        """Missing or unreadable file means "not in fallback"."""
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return FallbackState()
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "Unreadable auth state, assuming OAuth", path=str(self.path), err=str(exc)
            )
            return FallbackState()
        since = raw.get("fallbackSince") if isinstance(raw, dict) else None
        if isinstance(since, bool) or not isinstance(since, int | float):
            return FallbackState()
        return FallbackState(fallback_since=int(since))

    def _write(self, state: FallbackState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"fallbackSince": state.fallback_since}) + "\n")
        os.replace(tmp, self.path)

    def enter(self) -> None:
        """Start (or restart) the fallback window at the current time.

        A failed write is logged; the run carries on with the credential it has.
        """
        try:
            self._write(FallbackState(fallback_since=now_ms()))
        except OSError as exc:
            logger.error("Failed to persist fallback state", path=str(self.path), err=str(exc))
            return
        hours = self.duration_ms / 3_600_000
        logger.warning(
            "Auth: entered fallback mode (API key), will retry OAuth later",
            retry_in_hours=round(hours, 2),
        )

    def clear(self) -> None:
        """Return to OAuth. No write when already clear."""
        if self.read().fallback_since is None:
            return
        try:
            self._write(FallbackState())
        except OSError as exc:
            logger.error("Failed to clear fallback state", path=str(self.path), err=str(exc))
            return
        logger.info("Auth: cleared fallback mode, back to OAuth")


def default_store() -> FallbackStateStore:
    s = get_settings()
    return FallbackStateStore(s.auth_state_path, s.fallback_duration)
