"""Exception hierarchy for the host side of the sandbox.

Script-level failures are never raised: they come back from the guest as
:class:`~grantbox.models.outcome.Failure` values.  Everything in this
module describes a fault in configuration or infrastructure.
"""

from __future__ import annotations


class GrantboxError(Exception):
    """Base class for all host-side errors."""


class ConfigError(GrantboxError):
    """Invalid or missing front-end input (script source, mount specs)."""


class ParseError(ConfigError):
    """A mount specification could not be parsed into a grant."""


class InvalidPermission(ParseError):
    """The permission field of a mount specification is not ``ro``/``rw``."""

    def __init__(self, tag: str) -> None:
        super().__init__(f"Invalid permissions: {tag!r} (expected 'ro' or 'rw')")
        self.tag = tag


class GrantUnavailable(GrantboxError):
    """A granted host directory cannot be opened with the requested permission."""

    def __init__(self, host_path: str, reason: str) -> None:
        super().__init__(f"Cannot grant {host_path!r}: {reason}")
        self.host_path = host_path
        self.reason = reason


class ContextReusedError(GrantboxError):
    """An isolation context was handed to a second guest instance."""


class InstantiationError(GrantboxError):
    """The guest instance could not be stood up."""


class TrapError(GrantboxError):
    """The guest instance aborted instead of returning a result."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
