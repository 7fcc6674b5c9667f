"""Pydantic settings for the sandbox runner and its HTTP service."""

import logging
import sys

from pydantic import ValidationError
from pydantic_settings import BaseSettings

from grantbox.errors import ConfigError
from grantbox.sandbox.security import SecurityPolicy


def configure_logging(level: str) -> None:
    """Configure root logging on stderr so stdout stays reserved for results."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = {"env_prefix": "GRANTBOX_"}

    image: str = "python:3.12-slim"
    timeout_seconds: int = 30
    memory_limit_mb: int = 256
    pids_limit: int = 32
    cpu_quota: int = 100000  # 1 CPU
    tmpfs_size_mb: int = 16
    max_output_bytes: int = 1_048_576  # 1 MB, printed output plus final value
    mounts: list[str] = []  # host:guest[:ro|rw], used by the HTTP service only
    max_concurrent_executions: int = 4
    max_script_bytes: int = 1_048_576  # 1 MB
    fail_on_error: bool = False
    log_level: str = "WARNING"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    def to_policy(self, timeout_seconds: int | None = None) -> SecurityPolicy:
        """Build the container policy, optionally overriding the timeout."""
        try:
            return SecurityPolicy(
                image=self.image,
                timeout_seconds=timeout_seconds or self.timeout_seconds,
                memory_limit_mb=self.memory_limit_mb,
                pids_limit=self.pids_limit,
                cpu_quota=self.cpu_quota,
                tmpfs_size_mb=self.tmpfs_size_mb,
                max_output_bytes=self.max_output_bytes,
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid sandbox limits: {exc}") from exc


def load_settings() -> Settings:
    """Read :class:`Settings` from the environment.

    Raises :class:`~grantbox.errors.ConfigError` naming the offending
    variables when a ``GRANTBOX_*`` value does not validate.
    """
    try:
        return Settings()
    except ValidationError as exc:
        fields = ", ".join(
            "GRANTBOX_" + str(error["loc"][0]).upper() for error in exc.errors() if error["loc"]
        )
        raise ConfigError(f"Invalid environment configuration ({fields or 'settings'}): {exc}") from exc
