"""Data models for podwarden."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


@dataclass
class AdditionalMount:
    host_path: str  # Absolute path on host (supports ~ for home)
    container_path: str | None = None  # Defaults to basename of host_path
    readonly: bool = True  # Default: true for safety


@dataclass
class AllowedRoot:
    path: str  # Absolute path or ~ for home
    allow_read_write: bool = False
    description: str | None = None


@dataclass
class MountAllowlist:
    allowed_roots: list[AllowedRoot] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)
    non_main_read_only: bool = True


@dataclass
class GroupContainerConfig:
    additional_mounts: list[AdditionalMount] = field(default_factory=list)
    timeout: float | None = None  # Seconds; None → global container timeout

    @classmethod
    def from_dict(cls, raw: dict) -> GroupContainerConfig:
        return cls(
            additional_mounts=[AdditionalMount(**m) for m in raw.get("additional_mounts", [])],
            timeout=raw.get("timeout"),
        )


@dataclass
class RegisteredGroup:
    """A registered conversation group. Owned by the registration layer; read-only here."""

    jid: str
    name: str
    folder: str  # Folder under groups/, also the IPC / session namespace key
    container_config: GroupContainerConfig | None = None


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class ContainerInput:
    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    is_scheduled_task: bool = False
    # Attached only for the stdin write, then reset to None
    secrets: dict[str, str] | None = None


@dataclass
class ContainerOutput:
    status: Literal["success", "error"]
    result: str | None
    new_session_id: str | None = None
    error: str | None = None
    progress: str | None = None


AuthMethod = Literal["oauth", "fallback"]


@dataclass
class SecretsResult:
    secrets: dict[str, str]
    auth_method: AuthMethod


@dataclass
class MountValidationResult:
    allowed: bool
    reason: str
    real_host_path: str | None = None
    resolved_container_path: str | None = None
    effective_readonly: bool | None = None
