"""Command-line front end.

``grantbox run`` reads a script from a file or from ``-c``, builds the
requested grants, runs the script in a fresh sandbox and prints exactly
one line: ``Output: <result>`` or ``Error: <message>``.

Exit status:
  0 - the script ran; also when it failed, unless ``--fail-on-error``.
  1 - the script failed and ``--fail-on-error`` is set, or the sandbox
      itself could not be stood up or aborted.
  2 - invalid input (script source, mount specification, unavailable
      grant); no sandbox was built.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from grantbox.config import configure_logging, load_settings
from grantbox.errors import ConfigError, GrantUnavailable, InstantiationError, TrapError
from grantbox.host import GuestRuntimeHost
from grantbox.models.grant import parse_grants
from grantbox.models.outcome import Success
from grantbox.sandbox.boundary import build_isolation_context

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="grantbox",
    help="Run untrusted Python scripts in a sandbox with explicit filesystem grants.",
    add_completion=False,
    no_args_is_help=True,
)


def read_script(file: Path | None, command: str | None) -> str:
    """Return the script text from exactly one of *file* or *command*."""
    if file is not None and command is not None:
        raise ConfigError("Provide either a script file or an inline command using -c, not both.")
    if command is not None:
        return command
    if file is None:
        raise ConfigError("Please provide a script file or an inline command using -c.")
    try:
        return file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read script file {str(file)!r}: {exc}") from exc


@app.command()
def run(
    file: Annotated[
        Optional[Path],
        typer.Argument(help="The script file to execute"),
    ] = None,
    command: Annotated[
        Optional[str],
        typer.Option("--command", "-c", help="The script to execute inline"),
    ] = None,
    mount: Annotated[
        Optional[list[str]],
        typer.Option("--mount", "-m", help="Grant a host directory: host:guest[:ro|rw]"),
    ] = None,
    timeout: Annotated[
        Optional[int],
        typer.Option("--timeout", "-t", min=1, help="Wall-clock limit in seconds"),
    ] = None,
    fail_on_error: Annotated[
        Optional[bool],
        typer.Option("--fail-on-error/--no-fail-on-error", help="Exit with status 1 when the script fails"),
    ] = None,
    inherit_stdio: Annotated[
        bool,
        typer.Option("--inherit-stdio/--no-inherit-stdio", help="Forward the guest's stderr"),
    ] = True,
) -> None:
    """Execute a script in a fresh sandbox and print its result."""
    try:
        settings = load_settings()
        configure_logging(settings.log_level)
        policy = settings.to_policy(timeout_seconds=timeout)
        script = read_script(file, command)
        grants = parse_grants(mount or [])
        context = build_isolation_context(grants, inherit_stdio=inherit_stdio)
    except (ConfigError, GrantUnavailable) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    logger.info("Running %d-byte script with %d grant(s)", len(script.encode("utf-8")), len(grants))
    try:
        host = GuestRuntimeHost(policy=policy)
        outcome = asyncio.run(host.execute(context, script))
    except InstantiationError as exc:
        typer.echo(f"Error: sandbox could not be started: {exc}")
        raise typer.Exit(code=1) from exc
    except TrapError as exc:
        typer.echo(f"Error: sandbox aborted: {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        context.close()

    if isinstance(outcome, Success):
        typer.echo(f"Output: {outcome.output}")
        return

    typer.echo(f"Error: {outcome.message}")
    strict = settings.fail_on_error if fail_on_error is None else fail_on_error
    if strict:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Annotated[
        str,
        typer.Option("--host", "-h", help="Host to bind to"),
    ] = "",
    port: Annotated[
        int,
        typer.Option("--port", "-p", help="Port to bind to"),
    ] = 0,
) -> None:
    """Start the HTTP execution service.

    Defaults are loaded from settings (``GRANTBOX_API_HOST`` /
    ``GRANTBOX_API_PORT``); grants come from ``GRANTBOX_MOUNTS``.
    """
    import uvicorn

    try:
        settings = load_settings()
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    uvicorn.run(
        "grantbox.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
