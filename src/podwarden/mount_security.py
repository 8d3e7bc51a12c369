"""Mount security — validates additional mounts against an external allowlist.

The allowlist lives outside the project (``~/.config/podwarden/mount-allowlist.json``)
and is never mounted into a container, so an agent cannot widen its own
access by editing it.

Allowlist format::

    {
      "allowedRoots": [
        {"path": "~/projects", "allowReadWrite": true, "description": "Dev"}
      ],
      "blockedPatterns": ["password"],
      "nonMainReadOnly": true
    }

Custom blocked patterns are merged with :data:`DEFAULT_BLOCKED_PATTERNS`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from podwarden.config import get_settings
from podwarden.logger import logger
from podwarden.types import (
    AdditionalMount,
    AllowedRoot,
    MountAllowlist,
    MountValidationResult,
    VolumeMount,
)

DEFAULT_BLOCKED_PATTERNS: list[str] = [
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
]

EXTRA_MOUNT_PREFIX = "/workspace/extra"

# Loaded once per process; the allowlist is edited by hand and picked up on restart
_cached_allowlist: MountAllowlist | None = None
_allowlist_load_error: str | None = None


def _reset_cache() -> None:
    global _cached_allowlist, _allowlist_load_error
    _cached_allowlist = None
    _allowlist_load_error = None


def _expand_path(p: str) -> str:
    """Expand ``~`` using $HOME and make the path absolute."""
    home = os.environ.get("HOME") or str(Path.home())
    if p == "~":
        return home
    if p.startswith("~/"):
        return os.path.join(home, p[2:])
    return os.path.abspath(p)


def _real_path(p: str) -> str | None:
    """Resolve symlinks; None when the path does not exist."""
    if not os.path.exists(p):
        return None
    return os.path.realpath(p)


def load_mount_allowlist() -> MountAllowlist | None:
    """Load and cache the allowlist. Returns None when missing or invalid."""
    global _cached_allowlist, _allowlist_load_error

    if _cached_allowlist is not None:
        return _cached_allowlist
    if _allowlist_load_error is not None:
        return None

    path = get_settings().mount_allowlist_path
    if not path.exists():
        _allowlist_load_error = f"Mount allowlist not found at {path}"
        logger.warning(
            "Mount allowlist not found, additional mounts will be blocked",
            path=str(path),
        )
        return None

    try:
        raw = json.loads(path.read_text())
        roots_raw = raw["allowedRoots"]
        patterns_raw = raw["blockedPatterns"]
        non_main_read_only = raw["nonMainReadOnly"]
        if not isinstance(roots_raw, list) or not isinstance(patterns_raw, list):
            raise TypeError("allowedRoots and blockedPatterns must be arrays")
        if not isinstance(non_main_read_only, bool):
            raise TypeError("nonMainReadOnly must be a boolean")
        roots = [
            AllowedRoot(
                path=r["path"],
                allow_read_write=bool(r.get("allowReadWrite", False)),
                description=r.get("description"),
            )
            for r in roots_raw
        ]
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
        _allowlist_load_error = str(exc)
        logger.error(
            "Failed to load mount allowlist, additional mounts will be blocked",
            path=str(path),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None

    merged = list(dict.fromkeys([*DEFAULT_BLOCKED_PATTERNS, *patterns_raw]))
    _cached_allowlist = MountAllowlist(
        allowed_roots=roots,
        blocked_patterns=merged,
        non_main_read_only=non_main_read_only,
    )
    logger.info(
        "Mount allowlist loaded",
        path=str(path),
        allowed_roots=len(roots),
        blocked_patterns=len(merged),
    )
    return _cached_allowlist


def _matches_blocked_pattern(real_path: str, patterns: list[str]) -> str | None:
    """Return the first pattern found in any path component, or None."""
    parts = Path(real_path).parts
    for pattern in patterns:
        for part in parts:
            if part == pattern or pattern in part:
                return pattern
        if pattern in real_path:
            return pattern
    return None


def _find_allowed_root(real_path: str, roots: list[AllowedRoot]) -> AllowedRoot | None:
    for root in roots:
        real_root = _real_path(_expand_path(root.path))
        if real_root is None:
            continue
        if real_path == real_root or real_path.startswith(real_root.rstrip(os.sep) + os.sep):
            return root
    return None


def _is_valid_container_path(container_path: str) -> bool:
    """Container paths are relative to /workspace/extra and may not escape it."""
    if not container_path or not container_path.strip():
        return False
    if ".." in container_path:
        return False
    return not container_path.startswith("/")


def validate_mount(mount: AdditionalMount, *, is_main: bool) -> MountValidationResult:
    """Validate one additional mount for a main or non-main group."""
    allowlist = load_mount_allowlist()
    if allowlist is None:
        return MountValidationResult(
            allowed=False,
            reason=f"No mount allowlist configured at {get_settings().mount_allowlist_path}",
        )

    container_path = mount.container_path or os.path.basename(mount.host_path.rstrip("/"))
    if not _is_valid_container_path(container_path):
        return MountValidationResult(
            allowed=False,
            reason=f'Invalid container path: "{container_path}": must be relative, '
            "non-empty, and must not contain ..",
        )

    expanded = _expand_path(mount.host_path)
    real_path = _real_path(expanded)
    if real_path is None:
        return MountValidationResult(
            allowed=False,
            reason=f'Host path does not exist: "{mount.host_path}" (expanded: "{expanded}")',
        )

    blocked = _matches_blocked_pattern(real_path, allowlist.blocked_patterns)
    if blocked is not None:
        return MountValidationResult(
            allowed=False,
            reason=f'Path matches blocked pattern "{blocked}": "{real_path}"',
        )

    root = _find_allowed_root(real_path, allowlist.allowed_roots)
    if root is None:
        allowed = ", ".join(_expand_path(r.path) for r in allowlist.allowed_roots)
        return MountValidationResult(
            allowed=False,
            reason=f'Path "{real_path}" is not under any allowed root. Allowed roots: {allowed}',
        )

    effective_readonly = True
    if not mount.readonly:
        if not is_main and allowlist.non_main_read_only:
            logger.info("Mount forced to read-only for non-main group", mount=mount.host_path)
        elif not root.allow_read_write:
            logger.info(
                "Mount forced to read-only, root does not allow read-write",
                mount=mount.host_path,
                root=root.path,
            )
        else:
            effective_readonly = False

    suffix = f" ({root.description})" if root.description else ""
    return MountValidationResult(
        allowed=True,
        reason=f'Allowed under root "{root.path}"{suffix}',
        real_host_path=real_path,
        resolved_container_path=container_path,
        effective_readonly=effective_readonly,
    )


def validate_additional_mounts(
    mounts: list[AdditionalMount], group_name: str, is_main: bool
) -> list[VolumeMount]:
    """Validate a group's requested mounts; rejected ones are logged and dropped."""
    validated: list[VolumeMount] = []
    for mount in mounts:
        result = validate_mount(mount, is_main=is_main)
        if not result.allowed:
            logger.warning(
                "Additional mount REJECTED",
                group=group_name,
                requested_path=mount.host_path,
                container_path=mount.container_path,
                reason=result.reason,
            )
            continue
        assert result.real_host_path is not None
        validated.append(
            VolumeMount(
                host_path=result.real_host_path,
                container_path=f"{EXTRA_MOUNT_PREFIX}/{result.resolved_container_path}",
                readonly=bool(result.effective_readonly),
            )
        )
        logger.debug(
            "Additional mount validated",
            group=group_name,
            host_path=result.real_host_path,
            container_path=result.resolved_container_path,
            readonly=result.effective_readonly,
        )
    return validated


def generate_allowlist_template() -> str:
    """Return an example allowlist file for users to copy and edit."""
    template = {
        "allowedRoots": [
            {
                "path": "~/projects",
                "allowReadWrite": True,
                "description": "Development projects",
            },
            {
                "path": "~/Documents/work",
                "allowReadWrite": False,
                "description": "Work documents (read-only)",
            },
        ],
        "blockedPatterns": ["password", "secret", "token"],
        "nonMainReadOnly": True,
    }
    return json.dumps(template, indent=2)
