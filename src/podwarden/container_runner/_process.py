"""Process management — bounded capture, watchdog, graceful stop, exit classification.

Provides:
  - BoundedBuffer — accumulates decoded output up to a byte budget
  - Watchdog — activity-resettable hard timeout
  - _graceful_stop() — stops a container gracefully with fallback to kill
  - schedule_graceful_stop() — runs _graceful_stop as a task from a timer
  - _classify_exit() — classify exit state into final ContainerOutput
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass

from podwarden.logger import logger
from podwarden.runtime import get_runtime
from podwarden.types import ContainerOutput

GRACEFUL_STOP_TIMEOUT = 15.0


class BoundedBuffer:
    """Capture buffer that stops growing at ``limit`` characters.

    The first overflow sets ``truncated`` and logs once; later text is
    dropped.
    """

    def __init__(self, limit: int, *, stream: str, group: str) -> None:
        self.limit = limit
        self.stream = stream
        self.group = group
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        if self.truncated:
            return
        remaining = self.limit - self._size
        if len(text) > remaining:
            self._parts.append(text[:remaining])
            self._size += remaining
            self.truncated = True
            logger.warning(
                f"Container {self.stream} truncated",
                group=self.group,
                size=self._size,
            )
        else:
            self._parts.append(text)
            self._size += len(text)

    def getvalue(self) -> str:
        return "".join(self._parts)


class Watchdog:
    """Hard timeout that restarts its countdown on every ``reset``.

    At most one timer is pending at a time. ``fired`` stays True once the
    callback has run.
    """

    def __init__(self, timeout_secs: float, on_expire: Callable[[], None]) -> None:
        self.timeout_secs = timeout_secs
        self._on_expire = on_expire
        self._handle: asyncio.TimerHandle | None = None
        self.fired = False

    def _expire(self) -> None:
        self._handle = None
        self.fired = True
        self._on_expire()

    def reset(self) -> None:
        if self.fired:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.timeout_secs, self._expire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


async def _graceful_stop(proc: asyncio.subprocess.Process, container_name: str) -> None:
    """Stop container gracefully with 15s timeout, fallback to kill."""
    try:
        stop_proc = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            "stop",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            code = await asyncio.wait_for(stop_proc.wait(), timeout=GRACEFUL_STOP_TIMEOUT)
        except TimeoutError:
            logger.warning(
                "Graceful stop timed out, force killing",
                container=container_name,
            )
            _kill(stop_proc)
            await stop_proc.wait()
            _kill(proc)
            return
        if code != 0:
            logger.warning(
                "Graceful stop failed, force killing",
                container=container_name,
                code=code,
            )
            _kill(proc)
    except OSError as exc:
        logger.error(
            "Graceful stop failed, force killing",
            container=container_name,
            error=str(exc),
        )
        _kill(proc)


def schedule_graceful_stop(
    proc: asyncio.subprocess.Process, container_name: str
) -> asyncio.Task[None]:
    """Fire off ``_graceful_stop`` from a synchronous timer callback."""
    return asyncio.get_running_loop().create_task(_graceful_stop(proc, container_name))


def _kill(proc: asyncio.subprocess.Process) -> None:
    # Process may already have exited between the check and the signal
    with contextlib.suppress(ProcessLookupError):
        if proc.returncode is None:
            proc.kill()


# ---------------------------------------------------------------------------
# Container exit helpers
# ---------------------------------------------------------------------------


@dataclass
class _ExitInfo:
    """Post-exit state from a container run."""

    exit_code: int | None
    stderr: str
    timed_out: bool
    duration_ms: float
    had_streaming_output: bool
    new_session_id: str | None


def _classify_exit(
    exit_info: _ExitInfo,
    group_name: str,
    container_name: str,
    config_timeout: float,
) -> ContainerOutput | None:
    """Classify the abnormal endings into a final ContainerOutput.

    Handles three cases:
    - Timeout with output → idle cleanup (success)
    - Timeout with no output → real timeout (error)
    - Non-zero exit → error

    Returns None for a clean exit; the caller decides between streaming and
    legacy results.
    """
    if exit_info.timed_out:
        if exit_info.had_streaming_output:
            # Had output before timeout: idle cleanup, not a real error
            logger.info(
                "Container timed out after output (idle cleanup)",
                group=group_name,
                container=container_name,
                duration_ms=exit_info.duration_ms,
            )
            return ContainerOutput(
                status="success", result=None, new_session_id=exit_info.new_session_id
            )

        logger.error(
            "Container timed out with no output",
            group=group_name,
            container=container_name,
            duration_ms=exit_info.duration_ms,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Container timed out after {config_timeout:.0f}s",
        )

    if exit_info.exit_code != 0:
        logger.error(
            "Container exited with error",
            group=group_name,
            code=exit_info.exit_code,
            duration_ms=exit_info.duration_ms,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Container exited with code {exit_info.exit_code}: {exit_info.stderr[-200:]}",
        )

    return None
