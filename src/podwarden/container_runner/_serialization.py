"""Serialization helpers — camelCase/snake_case boundary crossing.

Converts ContainerInput to the dict written to the sandbox's stdin, and
validates JSON payloads read back from stdout into ContainerOutput.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from podwarden.types import ContainerInput, ContainerOutput


def input_to_dict(input_data: ContainerInput, *, include_secrets: bool = True) -> dict[str, Any]:
    """Convert ContainerInput to the wire dict for the agent-runner."""
    d: dict[str, Any] = {
        "prompt": input_data.prompt,
        "groupFolder": input_data.group_folder,
        "chatJid": input_data.chat_jid,
        "isMain": input_data.is_main,
    }
    if input_data.session_id is not None:
        d["sessionId"] = input_data.session_id
    if input_data.is_scheduled_task:
        d["isScheduledTask"] = True
    if include_secrets and input_data.secrets is not None:
        d["secrets"] = input_data.secrets
    return d


class OutputUnit(BaseModel):
    """One payload between the output sentinels."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = Field(default=None, alias="newSessionId")
    error: str | None = None
    progress: str | None = None

    def to_output(self) -> ContainerOutput:
        return ContainerOutput(
            status=self.status,
            result=self.result,
            new_session_id=self.new_session_id,
            error=self.error,
            progress=self.progress,
        )


@dataclass(frozen=True)
class ParseFailure:
    """A payload that could not be decoded. ``message`` is safe to surface."""

    message: str
    raw: str


def decode_output_unit(json_str: str) -> ContainerOutput | ParseFailure:
    """Validate one JSON payload. Never raises."""
    try:
        unit = OutputUnit.model_validate_json(json_str)
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
        first = errors[0]["msg"] if errors else str(exc)
        return ParseFailure(message=first, raw=json_str)
    return unit.to_output()
