"""Run log file writing and legacy output parsing."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from podwarden.config import Settings
from podwarden.container_runner._serialization import (
    ParseFailure,
    decode_output_unit,
    input_to_dict,
)
from podwarden.logger import is_verbose, logger
from podwarden.types import ContainerInput, ContainerOutput, VolumeMount


def write_run_log(
    *,
    logs_dir: Path,
    group_name: str,
    container_name: str,
    input_data: ContainerInput,
    container_args: list[str],
    mounts: list[VolumeMount],
    stdout: str,
    stderr: str,
    stdout_truncated: bool,
    stderr_truncated: bool,
    duration_ms: float,
    exit_code: int | None,
    timed_out: bool,
    had_streaming_output: bool,
) -> Path | None:
    """Write a timestamped log file for a container run.

    Returns the log path, or None when the write failed (logged, never raised).
    """
    now = datetime.now(UTC)
    ts = now.isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"container-{ts}.log"

    if timed_out:
        lines = [
            "=== Container Run Log (TIMEOUT) ===",
            f"Timestamp: {now.isoformat()}",
            f"Group: {group_name}",
            f"Container: {container_name}",
            f"Duration: {duration_ms:.0f}ms",
            f"Exit Code: {exit_code}",
            f"Had Streaming Output: {had_streaming_output}",
        ]
    else:
        lines = [
            "=== Container Run Log ===",
            f"Timestamp: {now.isoformat()}",
            f"Group: {group_name}",
            f"IsMain: {input_data.is_main}",
            f"Duration: {duration_ms:.0f}ms",
            f"Exit Code: {exit_code}",
            f"Stdout Truncated: {stdout_truncated}",
            f"Stderr Truncated: {stderr_truncated}",
            "",
        ]

        if is_verbose() or exit_code != 0:
            lines.extend(
                [
                    "=== Input ===",
                    json.dumps(input_to_dict(input_data, include_secrets=False), indent=2),
                    "",
                    "=== Container Args ===",
                    " ".join(container_args),
                    "",
                    "=== Mounts ===",
                    "\n".join(
                        f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                        for m in mounts
                    ),
                    "",
                    f"=== Stderr{' (TRUNCATED)' if stderr_truncated else ''} ===",
                    stderr,
                    "",
                    f"=== Stdout{' (TRUNCATED)' if stdout_truncated else ''} ===",
                    stdout,
                ]
            )
        else:
            lines.extend(
                [
                    "=== Input Summary ===",
                    f"Prompt length: {len(input_data.prompt)} chars",
                    f"Session ID: {input_data.session_id or 'new'}",
                    "",
                    "=== Mounts ===",
                    "\n".join(
                        f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts
                    ),
                    "",
                ]
            )

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file.write_text("\n".join(lines))
    except OSError as exc:
        logger.warning("Failed to write container run log", group=group_name, err=str(exc))
        return None

    logger.debug("Container log written", log_file=str(log_file))
    return log_file


# ---------------------------------------------------------------------------
# Legacy output parsing (no on_output callback)
# ---------------------------------------------------------------------------


def parse_final_output(stdout: str, container_name: str) -> ContainerOutput:
    """Parse the last marker pair from accumulated stdout (legacy mode)."""
    start_marker = Settings.OUTPUT_START_MARKER
    end_marker = Settings.OUTPUT_END_MARKER

    end_idx = stdout.rfind(end_marker)
    start_idx = stdout.rfind(start_marker, 0, end_idx) if end_idx != -1 else -1

    if start_idx != -1:
        json_str = stdout[start_idx + len(start_marker) : end_idx].strip()
    else:
        # Fallback: last non-empty line
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        json_str = lines[-1].strip() if lines else ""

    decoded = decode_output_unit(json_str)
    if isinstance(decoded, ParseFailure):
        logger.error(
            "Failed to parse container output",
            container=container_name,
            error=decoded.message,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Failed to parse container output: {decoded.message}",
        )
    return decoded
