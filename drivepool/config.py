"""
Runtime settings and logging setup.

Settings come from environment variables, optionally loaded from a ``.env``
file with python-dotenv.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from drivepool.exceptions import ConfigurationError

__all__ = ["Settings", "setup_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_REDIRECT_URI = "http://localhost:3000/api/auth/callback"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


@dataclass
class Settings:
    """
    DrivePool runtime settings.

    Attributes:
        data_dir: Directory for the local record store.
        google_client_id: OAuth client id for Google Drive accounts.
        google_client_secret: OAuth client secret for Google Drive accounts.
        google_redirect_uri: OAuth redirect URI registered with Google.
        kdf_iterations: PBKDF2 iterations for newly encrypted secrets.
        max_workers: Upload worker pool size.
        retry_attempts: Attempts per job on transient remote failures.
        retry_base_delay: First backoff delay in seconds.
        resumable_threshold: Uploads above this size use resumable sessions.
        chunk_size: Resumable upload chunk size in bytes.
        request_timeout: Per-request network timeout in seconds.
        log_level: Logging level name.
    """

    data_dir: Path = field(default_factory=lambda: Path.home() / ".drivepool")
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str = DEFAULT_REDIRECT_URI
    kdf_iterations: int = 600_000
    max_workers: int = 4
    retry_attempts: int = 5
    retry_base_delay: float = 1.0
    resumable_threshold: int = 5 * 1024 * 1024
    chunk_size: int = 8 * 1024 * 1024
    request_timeout: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> Settings:
        """
        Build settings from the environment.

        Args:
            dotenv_path: Optional .env file; the default search applies if None.

        Raises:
            ConfigurationError: If a variable has an invalid value.
        """
        load_dotenv(dotenv_path)

        data_dir = os.getenv("DRIVEPOOL_DATA_DIR")
        settings = cls(
            data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / ".drivepool",
            google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET") or None,
            google_redirect_uri=os.getenv("GOOGLE_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            kdf_iterations=_env_int("DRIVEPOOL_KDF_ITERATIONS", 600_000, minimum=100_000),
            max_workers=_env_int("DRIVEPOOL_MAX_WORKERS", 4, minimum=1),
            retry_attempts=_env_int("DRIVEPOOL_RETRY_ATTEMPTS", 5, minimum=1),
            retry_base_delay=_env_float("DRIVEPOOL_RETRY_BASE_DELAY", 1.0),
            resumable_threshold=_env_int(
                "DRIVEPOOL_RESUMABLE_THRESHOLD", 5 * 1024 * 1024, minimum=0
            ),
            chunk_size=_env_int("DRIVEPOOL_CHUNK_SIZE", 8 * 1024 * 1024, minimum=256 * 1024),
            request_timeout=_env_float("DRIVEPOOL_REQUEST_TIMEOUT", 60.0),
            log_level=os.getenv("DRIVEPOOL_LOG_LEVEL", "INFO").upper(),
        )

        if not isinstance(logging.getLevelName(settings.log_level), int):
            raise ConfigurationError(f"Unknown log level: {settings.log_level}")

        return settings

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging in the format used across DrivePool."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
