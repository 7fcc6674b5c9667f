"""Core domain models for grantbox."""

from grantbox.models.enums import FailureKind, Permission
from grantbox.models.grant import CapabilityGrant, parse_grant, parse_grants
from grantbox.models.outcome import ExecutionOutcome, Failure, Success, parse_outcome

__all__ = [
    "CapabilityGrant",
    "ExecutionOutcome",
    "Failure",
    "FailureKind",
    "Permission",
    "Success",
    "parse_grant",
    "parse_grants",
    "parse_outcome",
]
