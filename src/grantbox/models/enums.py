"""Permission and FailureKind enums."""

from enum import StrEnum


class Permission(StrEnum):
    """Access level of a capability grant.

    The value is the tag accepted in a mount specification and the mode
    Docker uses for the corresponding bind mount.
      ro - directory listing and file reads.
      rw - additionally create, write and delete within the subtree.
    """

    READ_ONLY = "ro"
    READ_WRITE = "rw"


class FailureKind(StrEnum):
    """Diagnostic tag carried by a script failure.

    Callers should branch on success versus failure only; the kind exists
    for presentation and logging.
    """

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
