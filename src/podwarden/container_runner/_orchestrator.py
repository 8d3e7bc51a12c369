"""Main entry point — spawns the container agent, streams its output, returns the result."""

from __future__ import annotations

import asyncio
import codecs
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from podwarden.auth import record_run_outcome, resolve_secrets
from podwarden.config import Settings, get_settings
from podwarden.container_runner._docker import remove_container
from podwarden.container_runner._logging import parse_final_output, write_run_log
from podwarden.container_runner._mounts import build_container_args, build_volume_mounts
from podwarden.container_runner._process import (
    BoundedBuffer,
    Watchdog,
    _classify_exit,
    _ExitInfo,
    schedule_graceful_stop,
)
from podwarden.container_runner._serialization import (
    ParseFailure,
    decode_output_unit,
    input_to_dict,
)
from podwarden.container_runner._session_prep import ProvisioningError
from podwarden.container_runner._stream import (
    OnOutput,
    OrderedDelivery,
    OutputStreamParser,
    RateLimitDetector,
)
from podwarden.logger import log_context, logger
from podwarden.runtime import get_runtime
from podwarden.types import ContainerInput, ContainerOutput, RegisteredGroup

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

OnProcess = Callable[[asyncio.subprocess.Process, str], Any]

READ_CHUNK = 8192
AGENT_RUNNER_LOG_TAG = "[agent-runner]"


# ---------------------------------------------------------------------------
# Container timeout resolution
# ---------------------------------------------------------------------------


def resolve_container_timeout(group: RegisteredGroup) -> float:
    """Return the configured container timeout in seconds.

    Per-group ``container_config.timeout`` takes priority; falls back to
    the global ``container.timeout_ms`` from Settings (converted to seconds).
    """
    if group.container_config and group.container_config.timeout:
        return group.container_config.timeout
    return get_settings().container_timeout


def effective_timeout(config_timeout: float) -> float:
    """Hard timeout: never shorter than the idle window plus a grace period."""
    return max(config_timeout, get_settings().idle_timeout + Settings.IDLE_GRACE_SECONDS)


# ---------------------------------------------------------------------------
# Container name helpers
# ---------------------------------------------------------------------------


def oneshot_container_name(group_folder: str) -> str:
    """Timestamped container name, unique per run."""
    safe_name = "".join(
        c if c.isascii() and (c.isalnum() or c == "-") else "-" for c in group_folder
    )
    return f"podwarden-{safe_name}-{int(time.time() * 1000)}"


# ---------------------------------------------------------------------------
# Per-run state
# ---------------------------------------------------------------------------


@dataclass
class _RunState:
    new_session_id: str | None = None
    had_streaming_output: bool = False
    first_output_logged: bool = False
    container_ready_logged: bool = False
    timed_out: bool = False


async def _write_input(
    proc: asyncio.subprocess.Process,
    input_data: ContainerInput,
    secrets: dict[str, str],
    container_name: str,
) -> None:
    """Send the input with secrets attached, then close stdin.

    Secrets only ever exist on the input for the duration of serialisation.
    """
    input_data.secrets = secrets
    try:
        payload = json.dumps(input_to_dict(input_data)).encode()
    finally:
        input_data.secrets = None

    assert proc.stdin is not None
    try:
        proc.stdin.write(payload)
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as exc:
        logger.warning("Container closed stdin early", container=container_name, err=str(exc))
    finally:
        proc.stdin.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_container_agent(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_process: OnProcess,
    on_output: OnOutput | None = None,
) -> ContainerOutput:
    """Spawn a container agent, stream output, manage timeouts, and return result.

    Args:
        group: The registered group configuration.
        input_data: Input payload for the agent-runner.
        on_process: Callback invoked with (proc, container_name) after spawn.
        on_output: If provided, called for each streamed output marker pair,
                   strictly in order. Enables streaming mode. Without it, the
                   result is parsed from the full stdout after exit.

    Returns:
        ContainerOutput with the final status.
    """
    container_name = oneshot_container_name(group.folder)
    with log_context(group_folder=group.folder, container=container_name):
        return await _run(group, input_data, on_process, on_output, container_name)


async def _run(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_process: OnProcess,
    on_output: OnOutput | None,
    container_name: str,
) -> ContainerOutput:
    start_time = time.monotonic()
    s = get_settings()

    try:
        mounts = build_volume_mounts(group, input_data.is_main)
    except ProvisioningError as exc:
        logger.error("Group provisioning failed", group=group.name, error=str(exc))
        return ContainerOutput(status="error", result=None, error=f"Provisioning failed: {exc}")

    container_args = build_container_args(mounts, container_name)

    logger.debug(
        "Container mount configuration",
        group=group.name,
        container=container_name,
        mounts=[
            f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts
        ],
        container_args=" ".join(container_args),
    )
    logger.info(
        "Spawning container agent",
        group=group.name,
        container=container_name,
        mount_count=len(mounts),
        is_main=input_data.is_main,
    )

    logs_dir = s.groups_dir / group.folder / "logs"

    secrets = await resolve_secrets()

    try:
        proc = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            *container_args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.error(
            "Container spawn error", group=group.name, container=container_name, error=str(exc)
        )
        return ContainerOutput(status="error", result=None, error=f"Container spawn error: {exc}")

    on_process(proc, container_name)

    # --- State ---
    state = _RunState()
    max_output = s.container.max_output_size
    stdout_buf = BoundedBuffer(max_output, stream="stdout", group=group.name)
    stderr_buf = BoundedBuffer(max_output, stream="stderr", group=group.name)
    parser = OutputStreamParser()
    rate_limit = RateLimitDetector(enabled=secrets.auth_method == "oauth")
    delivery = OrderedDelivery(on_output, group.name) if on_output is not None else None

    # --- Timeout management ---
    config_timeout = resolve_container_timeout(group)
    stop_tasks: list[asyncio.Task[None]] = []

    def kill_on_timeout() -> None:
        state.timed_out = True
        logger.error(
            "Container timeout, stopping gracefully",
            group=group.name,
            container=container_name,
        )
        stop_tasks.append(schedule_graceful_stop(proc, container_name))

    watchdog = Watchdog(effective_timeout(config_timeout), kill_on_timeout)
    watchdog.reset()

    # --- Stdout reader ---
    async def read_stdout() -> None:
        assert proc.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                rate_limit.inspect(text, source="stdout", group=group.name)
                stdout_buf.append(text)
                if delivery is not None:
                    await _handle_stream_text(text)
            if not chunk:
                break

    async def _handle_stream_text(text: str) -> None:
        assert delivery is not None
        for payload in parser.feed(text):
            decoded = decode_output_unit(payload)
            if isinstance(decoded, ParseFailure):
                logger.warning(
                    "Failed to parse streamed output chunk",
                    group=group.name,
                    error=decoded.message,
                )
                continue
            if decoded.new_session_id:
                state.new_session_id = decoded.new_session_id
            state.had_streaming_output = True
            if not state.first_output_logged:
                state.first_output_logged = True
                logger.info(
                    "First output from container (includes startup + inference)",
                    group=group.name,
                    cold_start_ms=round((time.monotonic() - start_time) * 1000),
                )
            # Parsed output counts as activity
            watchdog.reset()
            await delivery.put(decoded)

    # --- Stderr reader ---
    async def read_stderr() -> None:
        assert proc.stderr is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await proc.stderr.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                rate_limit.inspect(text, source="stderr", group=group.name)
                if not state.container_ready_logged and AGENT_RUNNER_LOG_TAG in text:
                    state.container_ready_logged = True
                    logger.info(
                        "Container ready (agent-runner first log)",
                        group=group.name,
                        container_startup_ms=round((time.monotonic() - start_time) * 1000),
                    )
                for line in text.strip().splitlines():
                    if line:
                        logger.debug(line, container=group.folder)
                # stderr never resets the watchdog: the SDK logs continuously
                stderr_buf.append(text)
            if not chunk:
                break

    # --- Write input and run readers concurrently, then wait for process exit ---
    try:
        await asyncio.gather(
            _write_input(proc, input_data, secrets.secrets, container_name),
            read_stdout(),
            read_stderr(),
        )
        exit_code = await proc.wait()
    finally:
        watchdog.cancel()
        if delivery is not None:
            await delivery.drain()
    for task in stop_tasks:
        await task
    if state.timed_out:
        # A killed `docker run` client can leave the container behind
        await remove_container(container_name)

    duration_ms = (time.monotonic() - start_time) * 1000

    write_run_log(
        logs_dir=logs_dir,
        group_name=group.name,
        container_name=container_name,
        input_data=input_data,
        container_args=container_args,
        mounts=mounts,
        stdout=stdout_buf.getvalue(),
        stderr=stderr_buf.getvalue(),
        stdout_truncated=stdout_buf.truncated,
        stderr_truncated=stderr_buf.truncated,
        duration_ms=duration_ms,
        exit_code=exit_code,
        timed_out=state.timed_out,
        had_streaming_output=state.had_streaming_output,
    )

    record_run_outcome(
        auth_method=secrets.auth_method,
        rate_limited=rate_limit.detected,
        exited_cleanly=not state.timed_out and exit_code == 0,
    )

    exit_info = _ExitInfo(
        exit_code=exit_code,
        stderr=stderr_buf.getvalue(),
        timed_out=state.timed_out,
        duration_ms=duration_ms,
        had_streaming_output=state.had_streaming_output,
        new_session_id=state.new_session_id,
    )
    classified = _classify_exit(exit_info, group.name, container_name, config_timeout)
    if classified is not None:
        return classified

    # Streaming mode: result already delivered via on_output callbacks
    if delivery is not None:
        logger.info(
            "Container completed (streaming mode)",
            group=group.name,
            duration_ms=duration_ms,
            delivered=delivery.delivered,
            new_session_id=state.new_session_id,
        )
        return ContainerOutput(status="success", result=None, new_session_id=state.new_session_id)

    # Legacy mode: parse final output from stdout
    output = parse_final_output(stdout_buf.getvalue(), container_name)
    logger.info(
        "Container completed",
        group=group.name,
        duration_ms=duration_ms,
        status=output.status,
        has_result=bool(output.result),
    )
    return output
