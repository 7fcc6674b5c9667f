"""Resource and privilege limits applied to every guest container."""

import os
from dataclasses import dataclass, field

# Worst case growth of the captured output once the guest JSON-encodes it
# in its reply (a control character becomes ``\u00XX``).
_JSON_ESCAPE_FACTOR = 6

# Room in the reply line for the envelope and a failure message.
_REPLY_OVERHEAD_BYTES = 64 * 1024

_POSITIVE_FIELDS = (
    "memory_limit_mb",
    "cpu_period",
    "cpu_quota",
    "pids_limit",
    "tmpfs_size_mb",
    "timeout_seconds",
    "max_output_bytes",
)


def _host_user() -> str:
    """Run the guest as the invoking user so rw grants honour host permissions."""
    if hasattr(os, "getuid"):
        return f"{os.getuid()}:{os.getgid()}"
    return "65534:65534"


@dataclass(frozen=True)
class SecurityPolicy:
    """Limits for one guest instance, shared read-only by a host.

    The guest never gets a network: ``network_disabled`` cannot be turned
    off and ``to_container_config`` pins ``network_mode`` to ``none``
    whatever the field says.  The guest's only writable locations are its
    read-write grants and a small ``noexec`` tmpfs on ``/tmp``.

    ``max_output_bytes`` caps what a script may print (plus its final
    value); the guest enforces it and reports an overrun as a script
    failure.  ``reply_limit_bytes`` is how much of the guest's stdout the
    host reads back.
    """

    image: str = "python:3.12-slim"
    network_disabled: bool = True
    read_only_rootfs: bool = True
    memory_limit_mb: int = 256
    cpu_period: int = 100000
    cpu_quota: int = 100000  # 1 CPU
    pids_limit: int = 32
    tmpfs_size_mb: int = 16
    timeout_seconds: int = 30
    max_output_bytes: int = 1024 * 1024
    no_new_privileges: bool = True
    cap_drop: list[str] = field(default_factory=lambda: ["ALL"])
    user: str = field(default_factory=_host_user)

    def __post_init__(self) -> None:
        if not self.network_disabled:
            raise ValueError("network_disabled must stay True: guests never get network access.")
        if not self.image:
            raise ValueError("image must name a guest image.")
        for name in _POSITIVE_FIELDS:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive integer, got {getattr(self, name)!r}.")

    @property
    def reply_limit_bytes(self) -> int:
        return self.max_output_bytes * _JSON_ESCAPE_FACTOR + _REPLY_OVERHEAD_BYTES

    def to_container_config(self) -> dict:
        """Keyword arguments for ``client.containers.create``."""
        memory = f"{self.memory_limit_mb}m"
        return {
            "network_mode": "none",
            "read_only": self.read_only_rootfs,
            "mem_limit": memory,
            "memswap_limit": memory,  # equal to mem_limit: no swap
            "cpu_period": self.cpu_period,
            "cpu_quota": self.cpu_quota,
            "pids_limit": self.pids_limit,
            "security_opt": ["no-new-privileges"] if self.no_new_privileges else [],
            "cap_drop": list(self.cap_drop),
            "tmpfs": {"/tmp": f"size={self.tmpfs_size_mb}m,noexec,nosuid,nodev"},
            "user": self.user,
        }
