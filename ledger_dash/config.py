"""Application configuration utilities for the ledger_dash backend.

This module centralises environment-driven configuration so the rest of the
code base does not need to read environment variables directly.  The sync
engine receives the API token explicitly; only the web layer reads it from
here.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load any variables defined in a local .env file. The call is idempotent, so
# importing it at module import time keeps the API ergonomic.
load_dotenv()

DEFAULT_API_URL = "https://api.up.com.au/api/v1"


@dataclass(frozen=True)
class AppConfig:
    """Strongly-typed container for runtime configuration.

    Attributes:
        project_root: Root directory of the project. Used to derive default
            paths so the app works out of the box after cloning the repo.
        database_file: Absolute path to the SQLite database that mirrors the
            bank account.
        api_token: Personal access token for the Up Bank API. Optional at load
            time so read-only endpoints keep working without it.
        api_base_url: Base URL of the Up Bank REST API.
        page_size: Number of transactions requested per page.
        http_timeout: Timeout in seconds applied to every HTTP request.
        log_level: Name of the root logging level.
    """

    project_root: Path
    database_file: Path
    api_token: Optional[str]
    api_base_url: str
    page_size: int
    http_timeout: float
    log_level: str


def load_config() -> AppConfig:
    """Create a new :class:`AppConfig` instance based on environment settings.

    Environment variables override the default values, allowing users to
    customise the runtime without touching the source code.
    """

    project_root = Path(__file__).resolve().parent.parent
    database_file = Path(
        getenv_with_default(
            "LEDGER_DASH_DB_FILE",
            project_root / "data" / "up-bank.db",
        )
    )

    api_token = getenv_with_default("UP_BANK_API_TOKEN")
    api_base_url = getenv_with_default("UP_BANK_API_URL", DEFAULT_API_URL)
    page_size = int(getenv_with_default("LEDGER_DASH_PAGE_SIZE", "100"))
    http_timeout = float(getenv_with_default("LEDGER_DASH_HTTP_TIMEOUT", "30"))
    log_level = getenv_with_default("LEDGER_DASH_LOG_LEVEL", "INFO").upper()

    # Ensure the directories exist so the repository can create the file.
    database_file.parent.mkdir(parents=True, exist_ok=True)

    return AppConfig(
        project_root=project_root,
        database_file=database_file,
        api_token=api_token or None,
        api_base_url=api_base_url.rstrip("/"),
        page_size=page_size,
        http_timeout=http_timeout,
        log_level=log_level,
    )


def require_api_token(config: AppConfig) -> str:
    """Return the configured API token or raise :class:`ConfigurationError`."""

    if not config.api_token:
        raise ConfigurationError(
            "UP_BANK_API_TOKEN is not configured. Add it to your environment or a .env file."
        )
    return config.api_token


def getenv_with_default(name: str, default: Optional[Path | str] = None) -> Optional[str]:
    """Return the value of an environment variable or a sensible default.

    ``None`` values are propagated so callers can make explicit decisions about
    optional configuration values. Paths are converted to strings, keeping the
    return type uniform and easy to serialise.
    """

    from os import getenv

    value = getenv(name)
    if value is not None:
        return value
    if default is None:
        return None
    return str(default)
