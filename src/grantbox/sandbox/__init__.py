"""Sandbox subsystem: capability boundary and ephemeral Docker containers."""

from grantbox.sandbox.boundary import IsolationContext, OpenedGrant, build_isolation_context
from grantbox.sandbox.container import ContainerSandbox, SandboxResult
from grantbox.sandbox.security import SecurityPolicy

__all__ = [
    "ContainerSandbox",
    "IsolationContext",
    "OpenedGrant",
    "SandboxResult",
    "SecurityPolicy",
    "build_isolation_context",
]
