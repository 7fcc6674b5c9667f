"""Tests for the Docker container lifecycle, against a mocked Docker SDK."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import docker.errors
import pytest
import requests.exceptions

from grantbox.errors import InstantiationError, TrapError
from grantbox.models.enums import Permission
from grantbox.models.grant import CapabilityGrant
from grantbox.sandbox.boundary import build_isolation_context
from grantbox.sandbox.container import ContainerSandbox
from grantbox.sandbox.security import SecurityPolicy

REPLY = b'{"status": "success", "output": "ok"}\n'
COMMAND = ["python", "/grantbox/shim.py"]
FILES = {"shim.py": "print('shim')", "request.json": '{"script": "1"}'}


def _make_container(exit_code: int = 0, stdout: bytes = REPLY, stderr: bytes = b"") -> MagicMock:
    container = MagicMock()
    container.short_id = "abc123"
    container.wait.return_value = {"StatusCode": exit_code}
    out, err = stdout, stderr
    container.logs.side_effect = lambda **kwargs: out if kwargs.get("stdout") else err
    return container


class _Harness:
    """Docker client whose ``create`` records the mounted program directory."""

    def __init__(self, container: MagicMock) -> None:
        self.container = container
        self.client = MagicMock()
        self.client.containers.create.side_effect = self._create
        self.program_dir: Path | None = None
        self.program_files: dict[str, str] = {}
        self.kwargs: dict = {}

    def _create(self, **kwargs):
        self.kwargs = kwargs
        for source, bind in kwargs["volumes"].items():
            if bind["bind"] == "/grantbox":
                self.program_dir = Path(source)
                self.program_files = {p.name: p.read_text() for p in self.program_dir.iterdir()}
        return self.container


@pytest.fixture()
def policy() -> SecurityPolicy:
    return SecurityPolicy(image="python:3.12-slim", timeout_seconds=5, user="1000:1000")


@pytest.mark.asyncio
async def test_run_creates_isolated_container(tmp_path, policy):
    harness = _Harness(_make_container())
    sandbox = ContainerSandbox(docker_client=harness.client)
    grant = CapabilityGrant(host_path=tmp_path, guest_path="/data", permission=Permission.READ_WRITE)

    with build_isolation_context([grant]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.exit_code == 0
    assert result.stdout == REPLY.decode()
    assert result.timed_out is False

    kwargs = harness.kwargs
    assert kwargs["image"] == "python:3.12-slim"
    assert kwargs["command"] == COMMAND
    assert kwargs["environment"] == {}
    assert kwargs["network_mode"] == "none"
    assert kwargs["read_only"] is True
    assert kwargs["user"] == "1000:1000"
    assert kwargs["volumes"][os.path.realpath(tmp_path)] == {"bind": "/data", "mode": "rw"}
    assert harness.program_files == FILES


@pytest.mark.asyncio
async def test_container_and_program_dir_always_removed(policy):
    harness = _Harness(_make_container())
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        await sandbox.run(context, COMMAND, FILES, policy)

    harness.container.remove.assert_called_once_with(force=True)
    assert harness.program_dir is not None
    assert not harness.program_dir.exists()


@pytest.mark.asyncio
async def test_timeout_kills_container(policy):
    container = _make_container()
    container.wait.side_effect = requests.exceptions.ReadTimeout("read timed out")
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.timed_out is True
    assert result.exit_code == -1
    container.wait.assert_called_once_with(timeout=5)
    container.kill.assert_called_once()
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        docker.errors.APIError("daemon went away"),
        requests.exceptions.ConnectionError("connection reset"),
        ConnectionResetError("connection reset"),
        docker.errors.DockerException("broken pipe"),
    ],
)
async def test_lost_contact_during_wait_is_trap(policy, error):
    container = _make_container()
    container.wait.side_effect = error
    container.kill.side_effect = docker.errors.APIError("no such container")
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(TrapError, match="Lost contact with guest container"):
            await sandbox.run(context, COMMAND, FILES, policy)

    container.kill.assert_called_once()
    container.remove.assert_called_once_with(force=True)
    assert not harness.program_dir.exists()


@pytest.mark.asyncio
async def test_expired_wait_reported_as_connection_error_is_timeout():
    policy = SecurityPolicy(timeout_seconds=1, user="1000:1000")
    container = _make_container()

    def expire(timeout):
        time.sleep(timeout + 0.05)
        raise requests.exceptions.ConnectionError("Read timed out.")

    container.wait.side_effect = expire
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.timed_out is True
    container.kill.assert_called_once()


@pytest.mark.asyncio
async def test_lost_logs_after_timeout_is_trap(policy):
    container = _make_container()
    container.wait.side_effect = requests.exceptions.ReadTimeout("read timed out")
    container.logs.side_effect = requests.exceptions.ConnectionError("refused")
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(TrapError):
            await sandbox.run(context, COMMAND, FILES, policy)

    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_failed_removal_does_not_mask_trap(policy):
    container = _make_container()
    container.wait.side_effect = docker.errors.APIError("daemon went away")
    container.remove.side_effect = requests.exceptions.ConnectionError("refused")
    sandbox = ContainerSandbox(docker_client=_Harness(container).client)

    with build_isolation_context([]) as context:
        with pytest.raises(TrapError):
            await sandbox.run(context, COMMAND, FILES, policy)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.ReadTimeout("read timed out"),
        docker.errors.APIError("conflict"),
        docker.errors.DockerException("daemon unreachable"),
        ConnectionRefusedError("refused"),
    ],
)
async def test_create_failure_is_instantiation_error(policy, error):
    client = MagicMock()
    client.containers.create.side_effect = error
    sandbox = ContainerSandbox(docker_client=client)

    with build_isolation_context([]) as context:
        with pytest.raises(InstantiationError, match="Could not start guest container"):
            await sandbox.run(context, COMMAND, FILES, policy)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ConnectionError("refused"),
        docker.errors.APIError("duplicate mount point"),
    ],
)
async def test_start_transport_failure_is_instantiation_error(policy, error):
    container = _make_container()
    container.start.side_effect = error
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(InstantiationError):
            await sandbox.run(context, COMMAND, FILES, policy)

    container.wait.assert_not_called()
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_oversized_stdout_is_flagged():
    policy = SecurityPolicy(max_output_bytes=16, user="1000:1000")
    oversized = b'{"status": "success", "output": "' + b"x" * policy.reply_limit_bytes + b'"}\n'
    harness = _Harness(_make_container(stdout=oversized))
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.stdout_truncated is True
    assert len(result.stdout.encode()) == policy.reply_limit_bytes


@pytest.mark.asyncio
async def test_stdout_within_reply_limit_is_not_flagged(policy):
    harness = _Harness(_make_container())
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.stdout_truncated is False


@pytest.mark.asyncio
async def test_missing_image_is_instantiation_error(policy):
    client = MagicMock()
    client.containers.create.side_effect = docker.errors.ImageNotFound("no such image")
    sandbox = ContainerSandbox(docker_client=client)

    with build_isolation_context([]) as context:
        with pytest.raises(InstantiationError, match="python:3.12-slim"):
            await sandbox.run(context, COMMAND, FILES, policy)


@pytest.mark.asyncio
async def test_start_failure_removes_container(policy):
    container = _make_container()
    container.start.side_effect = docker.errors.APIError("duplicate mount point")
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(InstantiationError, match="duplicate mount point"):
            await sandbox.run(context, COMMAND, FILES, policy)

    container.remove.assert_called_once_with(force=True)
    assert not harness.program_dir.exists()


@pytest.mark.asyncio
async def test_lost_logs_is_trap(policy):
    container = _make_container()
    container.logs.side_effect = docker.errors.APIError("gone")
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(TrapError):
            await sandbox.run(context, COMMAND, FILES, policy)

    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_cancellation_tears_down_container(policy):
    container = _make_container()
    container.wait.side_effect = lambda timeout: time.sleep(0.5) or {"StatusCode": 0}
    harness = _Harness(container)
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        task = asyncio.create_task(sandbox.run(context, COMMAND, FILES, policy))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    container.remove.assert_called_once_with(force=True)
    assert not harness.program_dir.exists()


@pytest.mark.asyncio
async def test_stderr_is_sanitized(policy):
    harness = _Harness(_make_container(stderr=b"\x1b[31mwarning\x1b[0m\x07\n"))
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        result = await sandbox.run(context, COMMAND, FILES, policy)

    assert result.stderr == "warning\n"


@pytest.mark.asyncio
async def test_rejects_program_file_paths(policy):
    harness = _Harness(_make_container())
    sandbox = ContainerSandbox(docker_client=harness.client)

    with build_isolation_context([]) as context:
        with pytest.raises(ValueError):
            await sandbox.run(context, COMMAND, {"../escape.py": ""}, policy)

    harness.client.containers.create.assert_not_called()


def test_unavailable_docker_is_instantiation_error():
    with patch("docker.from_env", side_effect=docker.errors.DockerException("no daemon")):
        with pytest.raises(InstantiationError, match="no daemon"):
            ContainerSandbox()


@pytest.mark.asyncio
async def test_ping():
    client = MagicMock()
    client.ping.return_value = True
    assert await ContainerSandbox(docker_client=client).ping() is True

    client.ping.side_effect = docker.errors.APIError("down")
    assert await ContainerSandbox(docker_client=client).ping() is False
