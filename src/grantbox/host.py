"""Guest runtime host: one fresh guest instance per script.

The host owns the read-only templates shared by every invocation (the
guest program source, the security policy and the Docker client) and
nothing else.  Each call to :meth:`GuestRuntimeHost.execute` consumes one
:class:`~grantbox.sandbox.boundary.IsolationContext`, stands up one
container for it, and tears both down before returning.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable

from pydantic import ValidationError

from grantbox.errors import TrapError
from grantbox.guest import SHIM_FILENAME, load_shim_source
from grantbox.models.enums import FailureKind
from grantbox.models.grant import CapabilityGrant
from grantbox.models.outcome import Failure, Success, parse_outcome
from grantbox.sandbox.boundary import RESERVED_GUEST_DIR, IsolationContext, build_isolation_context
from grantbox.sandbox.container import ContainerSandbox, SandboxResult
from grantbox.sandbox.security import SecurityPolicy

logger = logging.getLogger(__name__)

REQUEST_FILENAME = "request.json"

GUEST_COMMAND: list[str] = [
    "python",
    "-B",  # read-only rootfs, no bytecode caches
    "-I",
    "-S",
    f"{RESERVED_GUEST_DIR}/{SHIM_FILENAME}",
    f"{RESERVED_GUEST_DIR}/{REQUEST_FILENAME}",
]


class GuestRuntimeHost:
    """Runs scripts in isolated guest instances.

    Parameters
    ----------
    sandbox:
        Container lifecycle manager.  Defaults to one connected to the
        local Docker daemon.
    policy:
        Resource limits and guest image applied to every instance.
    """

    def __init__(
        self,
        sandbox: ContainerSandbox | None = None,
        policy: SecurityPolicy | None = None,
    ) -> None:
        self._sandbox = sandbox or ContainerSandbox()
        self._policy = policy or SecurityPolicy()
        self._shim_source = load_shim_source()

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    @property
    def sandbox(self) -> ContainerSandbox:
        return self._sandbox

    async def execute(self, context: IsolationContext, script: str) -> Success | Failure:
        """Run *script* in a new guest instance bounded by *context*.

        The context is consumed: its host descriptors are released when
        this call returns or raises, and it cannot be used again.

        Returns
        -------
        Success | Failure
            The guest's outcome, unchanged.  A script that exceeds the
            policy's timeout yields ``Failure(kind=TIMEOUT)``; one whose
            reply overruns the policy's output limit yields a runtime
            ``Failure``.

        Raises
        ------
        ContextReusedError
            If *context* was already used.
        InstantiationError
            If the guest instance could not be stood up.
        TrapError
            If the guest aborted instead of returning a result.
        """
        context.claim()
        with context:
            request = json.dumps(
                {
                    "script": script,
                    "grants": context.to_manifest(),
                    "max_output_bytes": self._policy.max_output_bytes,
                }
            )
            result = await self._sandbox.run(
                context,
                GUEST_COMMAND,
                {SHIM_FILENAME: self._shim_source, REQUEST_FILENAME: request},
                self._policy,
            )

        if result.stderr:
            if context.inherit_stdio:
                sys.stderr.write(result.stderr)
                sys.stderr.flush()
            else:
                logger.debug("Guest stderr: %s", result.stderr)

        outcome = self._interpret(result)
        logger.info(
            "Guest finished: status=%s time=%.3fs",
            outcome.status,
            result.execution_time_seconds,
        )
        return outcome

    async def execute_grants(
        self,
        grants: Iterable[CapabilityGrant],
        script: str,
        inherit_stdio: bool = False,
    ) -> Success | Failure:
        """Build a fresh isolation context from *grants* and execute *script* in it."""
        context = build_isolation_context(grants, inherit_stdio=inherit_stdio)
        return await self.execute(context, script)

    def _interpret(self, result: SandboxResult) -> Success | Failure:
        if result.timed_out:
            return Failure(
                message=f"Execution timed out after {self._policy.timeout_seconds}s",
                kind=FailureKind.TIMEOUT,
            )

        if result.stdout_truncated:
            # The reply line was cut off and cannot be parsed.
            return Failure(message=f"Output exceeds {self._policy.max_output_bytes} bytes")

        if result.exit_code != 0:
            raise TrapError(
                f"Guest aborted with exit status {result.exit_code}{_stderr_tail(result.stderr)}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise TrapError(
                f"Guest returned no result{_stderr_tail(result.stderr)}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        if len(lines) > 1:
            logger.debug("Ignoring %d stray stdout line(s) from guest", len(lines) - 1)

        try:
            return parse_outcome(lines[-1])
        except ValidationError as exc:
            raise TrapError(
                f"Guest returned a malformed result: {exc.error_count()} validation error(s)",
                exit_code=result.exit_code,
                stderr=result.stderr,
            ) from exc


def _stderr_tail(stderr: str) -> str:
    lines = [line for line in stderr.splitlines() if line.strip()]
    return f": {lines[-1]}" if lines else ""
