"""FastAPI application entry point.

Creates the app with a lifespan that loads settings, parses the
server-side grants, and builds the shared guest runtime host.  Everything
is stored in ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from grantbox.api.router import api_router
from grantbox.config import configure_logging, load_settings
from grantbox.host import GuestRuntimeHost
from grantbox.models.grant import parse_grants

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan -- set up shared, read-only resources.

    On startup:
        1. Load settings from the environment; an invalid value aborts
           startup with a ``ConfigError``.
        2. Parse ``GRANTBOX_MOUNTS`` into capability grants; a malformed
           entry aborts startup.
        3. Create the :class:`GuestRuntimeHost` and the concurrency limit.

    Per-request state (isolation context, container) is never stored here.
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    logger.info("Starting grantbox (log_level=%s)", settings.log_level)

    grants = parse_grants(settings.mounts)
    runtime = GuestRuntimeHost(policy=settings.to_policy())

    app.state.settings = settings
    app.state.grants = tuple(grants)
    app.state.runtime = runtime
    app.state.slots = asyncio.Semaphore(settings.max_concurrent_executions)

    logger.info(
        "Application startup complete (grants=%s, image=%s)",
        [str(grant) for grant in grants],
        runtime.policy.image,
    )

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title="grantbox",
    description="Sandboxed execution of untrusted Python scripts.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(api_router)
