"""Script execution endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from grantbox.errors import GrantUnavailable, InstantiationError, TrapError
from grantbox.models.outcome import ExecutionOutcome, Failure, Success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/execute", tags=["execute"])


class ExecuteRequest(BaseModel):
    """Request body for ``POST /v1/execute``."""

    script: str = Field(description="Full source text of the script to run in the sandbox.")


@router.post("", response_model=ExecutionOutcome)
async def execute(body: ExecuteRequest, request: Request) -> Success | Failure:
    """Run a script in a fresh sandbox and return its outcome.

    Grants come from the server's ``GRANTBOX_MOUNTS`` configuration; a
    client can never name host paths.  Script failures are ordinary
    ``200`` responses with ``status == "failure"``; infrastructure faults
    map to ``5xx`` errors.
    """
    settings = request.app.state.settings
    if len(body.script.encode("utf-8")) > settings.max_script_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Script exceeds maximum size of {settings.max_script_bytes} bytes",
        )

    runtime = request.app.state.runtime
    async with request.app.state.slots:
        try:
            return await runtime.execute_grants(request.app.state.grants, body.script)
        except GrantUnavailable as exc:
            logger.error("Configured grant unavailable: %s", exc)
            raise HTTPException(status_code=500, detail="Configured grant is unavailable") from exc
        except InstantiationError as exc:
            logger.error("Sandbox could not be started: %s", exc)
            raise HTTPException(status_code=503, detail="Sandbox could not be started") from exc
        except TrapError as exc:
            logger.warning("Sandbox aborted: %s", exc)
            raise HTTPException(status_code=502, detail=f"Sandbox aborted: {exc}") from exc
