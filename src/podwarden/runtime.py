"""Container runtime detection — Docker or Apple Container.

Both CLIs accept the same ``run -i --rm --name … -v …`` surface used by the
container runner, so the runtime only decides which binary is invoked.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Literal

from podwarden.config import get_settings
from podwarden.logger import logger


@dataclass(frozen=True)
class ContainerRuntime:
    """Detected container runtime."""

    name: Literal["apple", "docker"]
    cli: str  # "container" or "docker"

    def ensure_running(self) -> None:
        """Verify the runtime daemon answers; raise RuntimeError otherwise."""
        cmd = ["container", "system", "status"] if self.name == "apple" else ["docker", "info"]
        try:
            subprocess.run(cmd, capture_output=True, check=True, timeout=30)
        except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired) as exc:
            hint = (
                "Start with: container system start"
                if self.name == "apple"
                else "Start with: sudo systemctl start docker"
            )
            raise RuntimeError(f"{self.cli} is required but not running. {hint}") from exc
        logger.debug("Container runtime is running", runtime=self.name)


def detect_runtime() -> ContainerRuntime:
    """Pick the runtime.

    Priority: ``[container].runtime`` setting → Apple Container on macOS → Docker.
    """
    override = (get_settings().container.runtime or "").lower()
    if override == "apple":
        return ContainerRuntime(name="apple", cli="container")
    if override == "docker":
        return ContainerRuntime(name="docker", cli="docker")

    if sys.platform == "darwin" and shutil.which("container"):
        return ContainerRuntime(name="apple", cli="container")
    return ContainerRuntime(name="docker", cli="docker")


_runtime: ContainerRuntime | None = None


def get_runtime() -> ContainerRuntime:
    """Lazy singleton — caches the result of detect_runtime()."""
    global _runtime
    if _runtime is None:
        _runtime = detect_runtime()
        logger.info("Container runtime detected", name=_runtime.name, cli=_runtime.cli)
    return _runtime
