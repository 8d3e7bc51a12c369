"""IPC snapshot helpers — written before container launch for agent to read."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from podwarden.config import get_settings


def _ipc_dir(folder: str) -> Path:
    group_ipc_dir = get_settings().data_dir / "ipc" / folder
    group_ipc_dir.mkdir(parents=True, exist_ok=True)
    return group_ipc_dir


def write_tasks_snapshot(folder: str, is_main: bool, tasks: list[dict[str, Any]]) -> Path:
    """Write current_tasks.json to the group's IPC directory.

    Main sees every task; other groups only see tasks whose ``groupFolder``
    is their own.
    """
    filtered = tasks if is_main else [t for t in tasks if t.get("groupFolder") == folder]
    path = _ipc_dir(folder) / "current_tasks.json"
    path.write_text(json.dumps(filtered, indent=2))
    return path


def write_groups_snapshot(
    folder: str,
    is_main: bool,
    groups: list[dict[str, Any]],
    registered_jids: set[str],
) -> Path:
    """Write available_groups.json to the group's IPC directory."""
    # Main sees all groups; others see nothing (they can't activate groups)
    visible = (
        [{**g, "isRegistered": g.get("jid") in registered_jids} for g in groups] if is_main else []
    )
    payload = {
        "groups": visible,
        "lastSync": datetime.now(UTC).isoformat(),
    }
    path = _ipc_dir(folder) / "available_groups.json"
    path.write_text(json.dumps(payload, indent=2))
    return path
