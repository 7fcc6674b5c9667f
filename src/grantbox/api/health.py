"""Liveness and readiness endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    """Answers as long as the process serves requests."""
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    """Report whether a guest container could be started right now.

    The Docker daemon is the only external dependency, so readiness is a
    ping of the host's sandbox; 503 means executions would fail with an
    instantiation error.
    """
    runtime = getattr(request.app.state, "runtime", None)
    reachable = runtime is not None and await runtime.sandbox.ping()
    if not reachable:
        return JSONResponse(content={"status": "not_ready"}, status_code=503)
    return JSONResponse(content={"status": "ready"})
