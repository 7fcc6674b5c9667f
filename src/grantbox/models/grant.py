"""CapabilityGrant model and the mount specification parser."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from grantbox.errors import InvalidPermission, ParseError
from grantbox.models.enums import Permission

_PERMISSION_TAGS: dict[str, Permission] = {
    "ro": Permission.READ_ONLY,
    "rw": Permission.READ_WRITE,
}


class CapabilityGrant(BaseModel):
    """Authorization to expose one host directory to the guest."""

    model_config = ConfigDict(frozen=True)

    host_path: Path = Field(
        description="Directory on the trusted side; absolute or relative to the host's cwd.",
    )
    guest_path: str = Field(
        description=(
            "POSIX path under which the directory appears inside the sandbox, as given; "
            "normalized and anchored at '/' when the isolation context is built."
        ),
    )
    permission: Permission = Field(
        default=Permission.READ_ONLY,
        description="Access level granted to the guest.",
    )

    def __str__(self) -> str:
        return f"{self.host_path}:{self.guest_path}:{self.permission.value}"


def parse_grant(spec: str) -> CapabilityGrant:
    """Parse ``<host-path>:<guest-path>[:<perm>]`` into a :class:`CapabilityGrant`.

    The specification is split on ``:`` into at most three fields, so a
    colon can never appear in the host path and anything after the second
    colon is read as the permission tag.  A missing tag means read-only.

    No I/O is performed; whether the host path exists is checked when the
    isolation boundary is built.

    Raises
    ------
    InvalidPermission
        If the permission tag is neither ``ro`` nor ``rw``.
    ParseError
        If the host or guest field is missing or empty.
    """
    parts = spec.split(":", 2)
    if len(parts) < 2:
        raise ParseError(f"Invalid mount {spec!r}: expected <host>:<guest>[:ro|rw]")

    host, guest = parts[0], parts[1]
    if not host or not guest:
        raise ParseError(f"Invalid mount {spec!r}: host and guest paths must be non-empty")

    if len(parts) == 3:
        permission = _PERMISSION_TAGS.get(parts[2])
        if permission is None:
            raise InvalidPermission(parts[2])
    else:
        permission = Permission.READ_ONLY

    return CapabilityGrant(host_path=Path(host), guest_path=guest, permission=permission)


def parse_grants(specs: Iterable[str]) -> list[CapabilityGrant]:
    """Parse several mount specifications, preserving their order.

    Duplicates and overlapping guest paths are passed through unchanged.
    """
    return [parse_grant(spec) for spec in specs]
