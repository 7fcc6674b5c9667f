"""Shared fixtures and fakes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from grantbox.guest.shim import OutputSink, run
from grantbox.sandbox.container import SandboxResult


class RecordingSandbox:
    """Stands in for ContainerSandbox and returns a canned result."""

    def __init__(self, result: SandboxResult | None = None, error: Exception | None = None) -> None:
        self.result = result or SandboxResult(exit_code=0, stdout='{"status": "success", "output": ""}\n', stderr="")
        self.error = error
        self.calls: list[dict] = []

    async def run(self, context, command, program_files, policy):
        self.calls.append(
            {
                "context": context,
                "command": command,
                "program_files": program_files,
                "policy": policy,
                "grants_open": not context.closed,
            }
        )
        if self.error is not None:
            raise self.error
        return self.result

    async def ping(self) -> bool:
        return True


class InProcessSandbox:
    """Runs the shipped shim's ``run`` on the request instead of a container."""

    def __init__(self) -> None:
        self.instances = 0

    async def run(self, context, command, program_files, policy):
        self.instances += 1
        request = json.loads(program_files["request.json"])
        reply = run(request["script"], OutputSink(limit=request["max_output_bytes"]))
        return SandboxResult(exit_code=0, stdout=json.dumps(reply) + "\n", stderr="")


@pytest.fixture()
def recording_sandbox() -> RecordingSandbox:
    return RecordingSandbox()


@pytest.fixture()
def granted_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "granted"
    directory.mkdir()
    return directory
