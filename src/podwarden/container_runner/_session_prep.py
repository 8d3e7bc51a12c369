"""Per-group directory provisioning — group, session and IPC trees.

Mandatory directories are created first; failure there raises
ProvisioningError and the run is aborted before spawn. Everything after that
is a best-effort plan of independent steps, each of which logs and moves on
when it fails.
"""

from __future__ import annotations

import json
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from podwarden.config import get_settings
from podwarden.logger import logger

IPC_SUBDIRS = ("messages", "tasks", "input")

SESSION_ENV = {
    "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS": "1",
    "CLAUDE_CODE_ADDITIONAL_DIRECTORIES_CLAUDE_MD": "1",
    "CLAUDE_CODE_DISABLE_AUTO_MEMORY": "0",
}


class ProvisioningError(Exception):
    """A mandatory per-group directory could not be created."""


@dataclass(frozen=True)
class GroupPaths:
    """Host-side locations owned by one group folder."""

    group_dir: Path
    session_root: Path  # data/sessions/<folder>
    session_dir: Path  # data/sessions/<folder>/.claude
    ipc_dir: Path
    claude_json: Path  # per-group copy of ~/.claude.json

    @classmethod
    def for_folder(cls, folder: str) -> GroupPaths:
        s = get_settings()
        session_root = s.data_dir / "sessions" / folder
        return cls(
            group_dir=s.groups_dir / folder,
            session_root=session_root,
            session_dir=session_root / ".claude",
            ipc_dir=s.data_dir / "ipc" / folder,
            claude_json=session_root / ".claude.json",
        )


def ensure_group_dirs(paths: GroupPaths) -> None:
    """Create the directories a run cannot do without."""
    required = [
        paths.group_dir,
        paths.session_dir,
        paths.session_dir / "debug",
        *(paths.ipc_dir / sub for sub in IPC_SUBDIRS),
    ]
    for d in required:
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(f"Cannot create {d}: {exc}") from exc


# ---------------------------------------------------------------------------
# Best-effort steps
# ---------------------------------------------------------------------------


def _open_permissions(paths: GroupPaths) -> None:
    """Make the session tree writable by the sandbox's fixed uid.

    Directories get 0o777, files 0o666. Entries owned by another user are
    skipped individually.
    """
    for root, dirs, files in os.walk(paths.session_dir):
        for name in dirs:
            _chmod_quiet(Path(root) / name, 0o777)
        for name in files:
            _chmod_quiet(Path(root) / name, 0o666)
    _chmod_quiet(paths.session_dir, 0o777)


def _chmod_quiet(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as exc:
        logger.debug("chmod skipped", path=str(path), err=str(exc))


def _copy_credentials(paths: GroupPaths) -> None:
    """Copy ~/.claude/.credentials.json into the session dir."""
    src = get_settings().oauth_credentials_path
    if not src.exists():
        return
    dst = paths.session_dir / ".credentials.json"
    shutil.copyfile(src, dst)
    os.chmod(dst, 0o666)


def _seed_settings_json(paths: GroupPaths) -> None:
    """Write settings.json only when absent; the agent may edit it."""
    settings_file = paths.session_dir / "settings.json"
    if settings_file.exists():
        return
    settings_file.write_text(json.dumps({"env": SESSION_ENV}, indent=2) + "\n")


def _sync_skills(paths: GroupPaths) -> None:
    """Copy container/skills/<skill>/ files into the session's skills/ dir."""
    skills_src = get_settings().project_root / "container" / "skills"
    if not skills_src.is_dir():
        return
    skills_dst = paths.session_dir / "skills"
    for skill_dir in skills_src.iterdir():
        if not skill_dir.is_dir():
            continue
        dst_dir = skills_dst / skill_dir.name
        dst_dir.mkdir(parents=True, exist_ok=True)
        for f in skill_dir.iterdir():
            if f.is_file():
                shutil.copy2(f, dst_dir / f.name)


def _copy_claude_json(paths: GroupPaths) -> None:
    """Per-group copy of ~/.claude.json, or ``{}`` when the host has none."""
    host_file = get_settings().home_dir / ".claude.json"
    if host_file.exists():
        shutil.copyfile(host_file, paths.claude_json)
    else:
        paths.claude_json.write_text("{}")
    os.chmod(paths.claude_json, 0o666)


# Order matters: permissions run last so copied files are covered too
PROVISIONING_STEPS: list[tuple[str, Callable[[GroupPaths], None]]] = [
    ("copy_credentials", _copy_credentials),
    ("seed_settings", _seed_settings_json),
    ("sync_skills", _sync_skills),
    ("copy_claude_json", _copy_claude_json),
    ("open_permissions", _open_permissions),
]


def provision_session(paths: GroupPaths) -> list[str]:
    """Run every best-effort step; return the names of the steps that failed."""
    failed: list[str] = []
    for name, step in PROVISIONING_STEPS:
        try:
            step(paths)
        except (OSError, ValueError) as exc:
            failed.append(name)
            logger.warning(
                "Session provisioning step failed",
                step=name,
                session_dir=str(paths.session_dir),
                err=str(exc),
            )
    return failed
