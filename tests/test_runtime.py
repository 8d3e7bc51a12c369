"""Tests for the container runtime abstraction and image pre-warm."""

from __future__ import annotations

import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import podwarden.runtime as runtime_mod
from podwarden.container_runner._docker import prewarm_container, remove_container
from podwarden.runtime import ContainerRuntime, detect_runtime, get_runtime


class TestDetectRuntime:
    def test_setting_override_apple(self, settings):
        settings.container.runtime = "apple"
        r = detect_runtime()
        assert r == ContainerRuntime(name="apple", cli="container")

    def test_setting_override_docker(self, settings):
        settings.container.runtime = "Docker"
        assert detect_runtime().cli == "docker"

    def test_darwin_prefers_apple_container(self, settings):
        with (
            patch("podwarden.runtime.sys") as mock_sys,
            patch("podwarden.runtime.shutil.which", return_value="/usr/local/bin/container"),
        ):
            mock_sys.platform = "darwin"
            assert detect_runtime().name == "apple"

    def test_darwin_without_apple_cli_uses_docker(self, settings):
        with (
            patch("podwarden.runtime.sys") as mock_sys,
            patch("podwarden.runtime.shutil.which", return_value=None),
        ):
            mock_sys.platform = "darwin"
            assert detect_runtime().name == "docker"

    def test_linux_uses_docker(self, settings):
        with patch("podwarden.runtime.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert detect_runtime().name == "docker"


class TestGetRuntime:
    def test_cached(self, monkeypatch):
        monkeypatch.setattr(runtime_mod, "_runtime", None)
        with patch("podwarden.runtime.detect_runtime") as mock_detect:
            mock_detect.return_value = ContainerRuntime(name="docker", cli="docker")
            first = get_runtime()
            second = get_runtime()
        assert first is second
        mock_detect.assert_called_once()


class TestEnsureRunning:
    def test_ok(self):
        with patch("podwarden.runtime.subprocess.run") as mock_run:
            ContainerRuntime(name="docker", cli="docker").ensure_running()
        assert mock_run.call_args[0][0] == ["docker", "info"]

    def test_apple_status_check(self):
        with patch("podwarden.runtime.subprocess.run") as mock_run:
            ContainerRuntime(name="apple", cli="container").ensure_running()
        assert mock_run.call_args[0][0] == ["container", "system", "status"]

    def test_not_running_raises(self):
        err = subprocess.CalledProcessError(1, ["docker", "info"])
        with (
            patch("podwarden.runtime.subprocess.run", side_effect=err),
            pytest.raises(RuntimeError, match="docker is required"),
        ):
            ContainerRuntime(name="docker", cli="docker").ensure_running()

    def test_cli_missing_raises(self):
        with (
            patch("podwarden.runtime.subprocess.run", side_effect=FileNotFoundError),
            pytest.raises(RuntimeError, match="container system start"),
        ):
            ContainerRuntime(name="apple", cli="container").ensure_running()


# ---------------------------------------------------------------------------
# Pre-warm / remove
# ---------------------------------------------------------------------------

_EXEC = "podwarden.container_runner._docker.asyncio.create_subprocess_exec"


def _proc(returncode: int, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(b"", stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestPrewarm:
    async def test_success(self, settings):
        with patch(_EXEC, AsyncMock(return_value=_proc(0))) as mock_exec:
            assert await prewarm_container() is True

        args = mock_exec.call_args[0]
        assert args == ("docker", "run", "--rm", "--entrypoint", "true", settings.container.image)

    async def test_non_zero_exit(self, settings):
        with patch(_EXEC, AsyncMock(return_value=_proc(125, b"no such image"))):
            assert await prewarm_container() is False

    async def test_spawn_failure_never_raises(self, settings):
        with patch(_EXEC, AsyncMock(side_effect=FileNotFoundError("docker"))):
            assert await prewarm_container() is False


class TestRemoveContainer:
    async def test_force_removes_by_name(self):
        with patch(_EXEC, AsyncMock(return_value=_proc(0))) as mock_exec:
            await remove_container("podwarden-team-1")
        assert mock_exec.call_args[0] == ("docker", "rm", "-f", "podwarden-team-1")

    async def test_spawn_failure_ignored(self):
        with patch(_EXEC, AsyncMock(side_effect=OSError("boom"))):
            await remove_container("podwarden-team-1")
