"""Volume mount list and container CLI argument construction."""

from __future__ import annotations

import os

from podwarden.config import Settings, get_settings
from podwarden.container_runner._session_prep import (
    GroupPaths,
    ensure_group_dirs,
    provision_session,
)
from podwarden.logger import logger
from podwarden.mount_security import validate_additional_mounts
from podwarden.types import RegisteredGroup, VolumeMount


def build_volume_mounts(group: RegisteredGroup, is_main: bool) -> list[VolumeMount]:
    """Build the mount list for a container invocation.

    Creates the group's directories as a side effect (idempotent). Raises
    ProvisioningError when a mandatory directory cannot be created.

    Args:
        group: The registered group configuration
        is_main: Whether this is the main group

    Returns:
        List of volume mounts for the container
    """
    s = get_settings()
    paths = GroupPaths.for_folder(group.folder)
    ensure_group_dirs(paths)
    provision_session(paths)

    mounts: list[VolumeMount] = []

    if is_main:
        # Main gets the entire project root, plus its group folder as cwd
        mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=False))
        mounts.append(VolumeMount(str(paths.group_dir), "/workspace/group", readonly=False))
    else:
        mounts.append(VolumeMount(str(paths.group_dir), "/workspace/group", readonly=False))
        global_dir = s.groups_dir / "global"
        if global_dir.exists():
            mounts.append(VolumeMount(str(global_dir), "/workspace/global", readonly=True))

    # Per-group Claude sessions directory (isolated from other groups)
    home = Settings.CONTAINER_HOME
    mounts.append(VolumeMount(str(paths.session_dir), f"{home}/.claude", readonly=False))

    # Per-group IPC namespace
    mounts.append(VolumeMount(str(paths.ipc_dir), "/workspace/ipc", readonly=False))

    if paths.claude_json.exists():
        mounts.append(VolumeMount(str(paths.claude_json), f"{home}/.claude.json", readonly=False))

    # Dev mode: live agent-runner source over the image's built copy
    if s.container.dev_mount:
        agent_runner_src = s.project_root / "container" / "agent-runner" / "src"
        mounts.append(VolumeMount(str(agent_runner_src), "/app/src", readonly=True))

    # Additional mounts validated against external allowlist
    if group.container_config and group.container_config.additional_mounts:
        mounts.extend(
            validate_additional_mounts(
                group.container_config.additional_mounts, group.name, is_main
            )
        )

    return mounts


def _host_identity() -> tuple[int, int] | None:
    """Host uid/gid, or None on platforms without them."""
    getuid = getattr(os, "getuid", None)
    getgid = getattr(os, "getgid", None)
    if getuid is None or getgid is None:
        return None
    return getuid(), getgid()


def build_container_args(mounts: list[VolumeMount], container_name: str) -> list[str]:
    """Build CLI args for `docker run`."""
    s = get_settings()
    args = ["run", "-i", "--rm", "--name", container_name]

    # Match the host user so bind-mounted files stay writable. Root and the
    # image's own uid need no override.
    identity = _host_identity()
    if identity is not None and identity[0] not in (0, Settings.CONTAINER_UID):
        args.extend(["--user", f"{identity[0]}:{identity[1]}"])

    args.extend(["-e", f"HOME={Settings.CONTAINER_HOME}"])
    args.extend(["-e", f"TZ={s.timezone}"])

    for m in mounts:
        if m.readonly:
            args.extend(["-v", f"{m.host_path}:{m.container_path}:ro"])
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])

    args.append(s.container.image)
    logger.debug("Container args built", container=container_name, arg_count=len(args))
    return args
