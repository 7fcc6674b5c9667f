"""ExecutionOutcome: the Success/Failure sum returned by the guest."""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from grantbox.models.enums import FailureKind


class Success(BaseModel):
    """The script ran to completion."""

    status: Literal["success"] = "success"
    output: str = Field(
        description="Captured stdout followed by the text of the final value.",
    )


class Failure(BaseModel):
    """The script did not compile, raised, or ran out of time."""

    status: Literal["failure"] = "failure"
    message: str = Field(
        description="Human-readable rendering of the error, including a traceback.",
    )
    kind: FailureKind = Field(
        default=FailureKind.RUNTIME,
        description="Diagnostic tag; not meant for control flow.",
    )


ExecutionOutcome = Annotated[Success | Failure, Field(discriminator="status")]

_outcome_adapter: TypeAdapter[Success | Failure] = TypeAdapter(ExecutionOutcome)


def parse_outcome(raw: str | bytes) -> Success | Failure:
    """Validate a JSON reply produced by the guest shim.

    Raises ``pydantic.ValidationError`` if *raw* is not a well-formed outcome.
    """
    return _outcome_adapter.validate_json(raw)
