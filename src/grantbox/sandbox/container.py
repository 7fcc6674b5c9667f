"""Docker container lifecycle for one guest instance."""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import docker
import docker.errors
import requests.exceptions

from grantbox.errors import InstantiationError, TrapError
from grantbox.sandbox.boundary import RESERVED_GUEST_DIR, IsolationContext
from grantbox.sandbox.security import SecurityPolicy

logger = logging.getLogger(__name__)

# Maximum bytes of stderr captured from the container.
_MAX_STDERR_BYTES: int = 64 * 1024  # 64 KB

# Anything the Docker SDK or its HTTP transport raises once the client exists.
_TRANSPORT_ERRORS = (
    docker.errors.DockerException,
    requests.exceptions.RequestException,
    ConnectionError,
)

# Regex to strip ANSI escape sequences (colours, cursor movement, etc.).
_ANSI_ESCAPE_RE: re.Pattern[str] = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

# Control characters to strip (everything except newline \n, carriage return \r, tab \t).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _sanitize_output(raw: str) -> str:
    """Strip ANSI escape codes and control characters from guest stderr.

    Newlines, carriage returns, and tabs are preserved.
    """
    text = _ANSI_ESCAPE_RE.sub("", raw)
    text = _CONTROL_CHAR_RE.sub("", text)
    return text


def _truncate_bytes(data: bytes, limit: int) -> bytes:
    """Truncate *data* to at most *limit* bytes, appending a marker if cut."""
    if len(data) <= limit:
        return data
    return data[:limit] + f"\n... [truncated at {limit} bytes]\n".encode()


@dataclass(frozen=True)
class SandboxResult:
    """Raw outcome of one guest container run."""

    exit_code: int
    stdout: str
    stderr: str
    execution_time_seconds: float = 0.0
    timed_out: bool = False
    stdout_truncated: bool = False


async def _kill_quietly(container) -> None:
    try:
        await asyncio.to_thread(container.kill)
    except _TRANSPORT_ERRORS as exc:
        # Already exited, or the daemon is gone; removal is retried in finally.
        logger.debug("Could not kill container %s: %s", container.short_id, exc)


class ContainerSandbox:
    """Manages the full lifecycle of an ephemeral guest container.

    Each call to :meth:`run` creates a fresh container and a fresh
    temporary directory for the guest program, executes it, collects
    results, and **unconditionally** removes both, regardless of success,
    failure or cancellation.

    All blocking Docker SDK calls are dispatched via
    ``asyncio.to_thread`` so that the event loop is never blocked.
    """

    def __init__(self, docker_client: docker.DockerClient | None = None) -> None:
        if docker_client is None:
            try:
                docker_client = docker.from_env()
            except docker.errors.DockerException as exc:
                raise InstantiationError(f"Docker is not available: {exc}") from exc
        self._client = docker_client

    async def ping(self) -> bool:
        """Return ``True`` if the Docker daemon is reachable."""
        try:
            return bool(await asyncio.to_thread(self._client.ping))
        except (docker.errors.DockerException, requests.exceptions.RequestException):
            return False

    async def run(
        self,
        context: IsolationContext,
        command: list[str],
        program_files: dict[str, str],
        policy: SecurityPolicy,
    ) -> SandboxResult:
        """Execute *command* in a fresh container bounded by *context*.

        Parameters
        ----------
        context:
            Grants for this instance; rendered as bind mounts.
        command:
            Command and arguments to execute inside the container.
        program_files:
            Mapping of ``filename -> text`` placed read-only under
            ``/grantbox/`` (the guest program and its request).
        policy:
            Resource limits and image.

        Raises
        ------
        InstantiationError
            If the container could not be created or started.
        TrapError
            If contact with the container was lost after it started.
        """
        container = None
        program_dir: tempfile.TemporaryDirectory[str] | None = None

        try:
            # ---- 1. Write the guest program for the read-only bind mount ----
            program_dir = tempfile.TemporaryDirectory(prefix="grantbox_")
            for name, text in program_files.items():
                if "/" in name or name in ("", ".", ".."):
                    raise ValueError(f"Invalid program file name: {name!r}")
                (Path(program_dir.name) / name).write_text(text, encoding="utf-8")

            binds: dict[str, dict[str, str]] = {
                program_dir.name: {"bind": RESERVED_GUEST_DIR, "mode": "ro"},
            }
            binds.update(context.to_binds())

            host_config = policy.to_container_config()
            host_config["volumes"] = binds

            # ---- 2. Create container (not yet started) ---------------------
            try:
                container = await asyncio.to_thread(
                    self._client.containers.create,
                    image=policy.image,
                    command=command,
                    working_dir="/",
                    hostname="grantbox",
                    detach=True,
                    stdin_open=False,
                    tty=False,
                    environment={},
                    **host_config,
                )
                logger.info("Container created: id=%s image=%s", container.short_id, policy.image)

                start_time = time.monotonic()
                await asyncio.to_thread(container.start)
            except docker.errors.ImageNotFound as exc:
                raise InstantiationError(f"Guest image not found: {policy.image}") from exc
            except _TRANSPORT_ERRORS as exc:
                raise InstantiationError(f"Could not start guest container: {exc}") from exc

            # ---- 3. Wait with timeout --------------------------------------
            timed_out = False
            try:
                exit_info = await asyncio.to_thread(container.wait, timeout=policy.timeout_seconds)
                exit_code: int = int(exit_info.get("StatusCode", -1))
            except _TRANSPORT_ERRORS as exc:
                waited = time.monotonic() - start_time
                await _kill_quietly(container)
                # docker-py reports an expired wait as either exception type.
                deadline_passed = waited >= policy.timeout_seconds
                if not isinstance(exc, requests.exceptions.ReadTimeout) and not (
                    isinstance(exc, requests.exceptions.ConnectionError) and deadline_passed
                ):
                    raise TrapError(f"Lost contact with guest container: {exc}") from exc
                logger.warning("Container %s timed out after %.1fs", container.short_id, waited)
                timed_out = True
                exit_code = -1

            elapsed = time.monotonic() - start_time

            # ---- 4. Capture stdout / stderr --------------------------------
            try:
                raw_stdout: bytes = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
                raw_stderr: bytes = await asyncio.to_thread(container.logs, stdout=False, stderr=True)
            except _TRANSPORT_ERRORS as exc:
                raise TrapError(f"Lost contact with guest container: {exc}") from exc

            stdout_truncated = len(raw_stdout) > policy.reply_limit_bytes
            raw_stdout = raw_stdout[: policy.reply_limit_bytes]
            raw_stderr = _truncate_bytes(raw_stderr, _MAX_STDERR_BYTES)

            return SandboxResult(
                exit_code=exit_code,
                stdout=raw_stdout.decode("utf-8", errors="replace"),
                stderr=_sanitize_output(raw_stderr.decode("utf-8", errors="replace")),
                execution_time_seconds=round(elapsed, 3),
                timed_out=timed_out,
                stdout_truncated=stdout_truncated,
            )

        finally:
            # ---- 5. ALWAYS remove container --------------------------------
            if container is not None:
                try:
                    await asyncio.to_thread(container.remove, force=True)
                    logger.info("Container removed: id=%s", container.short_id)
                except _TRANSPORT_ERRORS as exc:
                    # Removal failure never masks the run's own exception.
                    logger.error("Failed to remove container %s: %s", container.short_id, exc)

            if program_dir is not None:
                program_dir.cleanup()
