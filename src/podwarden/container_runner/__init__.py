"""Container runner — spawns agent execution in containers.

Spawns the sandbox subprocess, writes JSON input (with secrets) to stdin,
parses sentinel-delimited output from stdout as it streams, manages
activity-based timeouts, and writes log files.

This package is split into focused submodules:
  _serialization  — JSON boundary crossing (ContainerInput <-> dict, output schema)
  _session_prep   — Per-group directory provisioning (session, IPC, settings, skills)
  _mounts         — Volume mount list and container arg construction
  _stream         — Sentinel parser, rate-limit latch, ordered output delivery
  _process        — Output capture, watchdog, graceful stop, exit classification
  _logging        — Run log file writing and legacy output parsing
  _snapshots      — IPC snapshot file helpers
  _docker         — Pre-warm and force-remove helpers
  _orchestrator   — Main entry point (run_container_agent)
"""

# Re-export public API so that `from podwarden.container_runner import X` works.
# Private helpers (_xxx) should be imported from their submodules directly.

from podwarden.container_runner._docker import prewarm_container, remove_container
from podwarden.container_runner._mounts import build_container_args, build_volume_mounts
from podwarden.container_runner._orchestrator import (
    OnProcess,
    oneshot_container_name,
    resolve_container_timeout,
    run_container_agent,
)
from podwarden.container_runner._session_prep import ProvisioningError
from podwarden.container_runner._snapshots import write_groups_snapshot, write_tasks_snapshot
from podwarden.container_runner._stream import OnOutput

__all__ = [
    "OnOutput",
    "OnProcess",
    "ProvisioningError",
    "build_container_args",
    "build_volume_mounts",
    "oneshot_container_name",
    "prewarm_container",
    "remove_container",
    "resolve_container_timeout",
    "run_container_agent",
    "write_groups_snapshot",
    "write_tasks_snapshot",
]
