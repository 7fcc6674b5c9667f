"""Host-side construction of the isolation boundary.

The guest's filesystem namespace is exactly the set of grants: every
granted host directory is opened here, pinned by a descriptor for the
lifetime of one invocation, and exposed to the guest only under its
guest path.  The host path string never crosses the boundary.
"""

from __future__ import annotations

import logging
import os
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from grantbox.errors import ContextReusedError, GrantUnavailable
from grantbox.models.enums import Permission
from grantbox.models.grant import CapabilityGrant

logger = logging.getLogger(__name__)

# Directory inside the guest that holds the shim and its request.  Grants
# may not cover or shadow it.
RESERVED_GUEST_DIR = "/grantbox"

_O_DIRECTORY = getattr(os, "O_DIRECTORY", 0)


@dataclass(frozen=True)
class OpenedGrant:
    """A grant whose host directory has been opened and pinned."""

    grant: CapabilityGrant
    real_path: str
    guest_path: str
    fd: int

    @property
    def permission(self) -> Permission:
        return self.grant.permission


def normalize_guest_path(guest_path: str) -> str:
    """Anchor *guest_path* at ``/`` and collapse ``.``/``..`` components."""
    return posixpath.normpath(posixpath.join("/", guest_path))


def _overlaps(path: str, other: str) -> bool:
    return path == other or path.startswith(other + "/") or other.startswith(path + "/")


class IsolationContext:
    """Grants and stdio policy for exactly one guest instance.

    The context owns one open descriptor per grant and releases all of
    them on :meth:`close` (or when used as a context manager).  It may be
    claimed by a single guest instance only.
    """

    def __init__(self, grants: tuple[OpenedGrant, ...], inherit_stdio: bool) -> None:
        self._grants = grants
        self.inherit_stdio = inherit_stdio
        self._claimed = False
        self._closed = False

    @property
    def grants(self) -> tuple[OpenedGrant, ...]:
        return self._grants

    @property
    def closed(self) -> bool:
        return self._closed

    def claim(self) -> None:
        """Mark the context as consumed by a guest instance."""
        if self._claimed:
            raise ContextReusedError("IsolationContext has already been used by a guest instance")
        if self._closed:
            raise ContextReusedError("IsolationContext has already been closed")
        self._claimed = True

    def to_binds(self) -> dict[str, dict[str, str]]:
        """Docker bind table: host real path -> guest mount point and mode."""
        return {
            opened.real_path: {"bind": opened.guest_path, "mode": opened.permission.value}
            for opened in self._grants
        }

    def to_manifest(self) -> list[dict[str, str]]:
        """Guest-visible description of the grants (no host paths)."""
        return [
            {"guest_path": opened.guest_path, "permission": opened.permission.value}
            for opened in self._grants
        ]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for opened in self._grants:
            try:
                os.close(opened.fd)
            except OSError as exc:
                logger.error("Failed to release grant %s: %s", opened.guest_path, exc)

    def __enter__(self) -> IsolationContext:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        mounts = ", ".join(f"{g.guest_path}:{g.permission.value}" for g in self._grants)
        return f"IsolationContext([{mounts}], inherit_stdio={self.inherit_stdio})"


def _open_grant(grant: CapabilityGrant) -> OpenedGrant:
    host = str(grant.host_path)
    guest_path = normalize_guest_path(grant.guest_path)
    if guest_path == "/":
        raise GrantUnavailable(host, "the guest root cannot be replaced by a grant")
    if _overlaps(guest_path, RESERVED_GUEST_DIR):
        raise GrantUnavailable(host, f"guest path {guest_path!r} overlaps {RESERVED_GUEST_DIR}")

    real_path = os.path.realpath(Path(host).expanduser())
    try:
        fd = os.open(real_path, os.O_RDONLY | _O_DIRECTORY)
    except OSError as exc:
        raise GrantUnavailable(host, exc.strerror or str(exc)) from exc

    try:
        # The descriptor and the path handed to Docker must name the same directory.
        opened_stat = os.fstat(fd)
        path_stat = os.stat(real_path)
        if (opened_stat.st_dev, opened_stat.st_ino) != (path_stat.st_dev, path_stat.st_ino):
            raise GrantUnavailable(host, "directory changed while it was being opened")
        if grant.permission is Permission.READ_WRITE and not os.access(real_path, os.W_OK):
            raise GrantUnavailable(host, "read-write access requested but directory is not writable")
    except OSError as exc:
        os.close(fd)
        raise GrantUnavailable(host, exc.strerror or str(exc)) from exc
    except GrantUnavailable:
        os.close(fd)
        raise

    return OpenedGrant(grant=grant, real_path=real_path, guest_path=guest_path, fd=fd)


def build_isolation_context(
    grants: Iterable[CapabilityGrant],
    inherit_stdio: bool = False,
) -> IsolationContext:
    """Open every granted host directory and bundle them into a context.

    Parameters
    ----------
    grants:
        Capability grants for this invocation.  Order is preserved;
        duplicates are not removed.
    inherit_stdio:
        Forward the guest's standard error to the host.  Standard output
        is always captured.

    Raises
    ------
    GrantUnavailable
        If a host directory cannot be opened with the requested
        permission.  Descriptors opened for earlier grants are released
        before the error propagates.
    """
    opened: list[OpenedGrant] = []
    try:
        for grant in grants:
            opened.append(_open_grant(grant))
    except BaseException:
        for item in opened:
            os.close(item.fd)
        raise

    logger.debug("Built isolation context with %d grant(s)", len(opened))
    return IsolationContext(tuple(opened), inherit_stdio)
