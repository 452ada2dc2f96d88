"""
Environment-based configuration for the dispatcher service.

ENDPOINT, SECRET and DATABASE_URL are required; everything else has a default.
A .env file in the working directory is loaded first for development.
"""
import os
from dataclasses import dataclass
from typing import Optional

import pytz
from dotenv import load_dotenv

DEFAULT_PORT = "8080"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_CALLBACK_TIMEOUT = "10"  # seconds
DEFAULT_SHUTDOWN_GRACE_PERIOD = "10"  # seconds

REQUIRED_VARIABLES = ("ENDPOINT", "SECRET", "DATABASE_URL")


class ConfigError(Exception):
    """Raised when the environment does not describe a runnable service."""


@dataclass(frozen=True)
class Settings:
    """
    Settings loaded from environment variables.

    Attributes:
        endpoint: URL every callback is POSTed to.
        secret: Shared secret for inbound requests and outbound callbacks.
        database_url: SQLAlchemy connection string for the job and cron tables.
        host: Interface the HTTP gateway binds to.
        port: Port the HTTP gateway listens on.
        callback_timeout: Per-request timeout for outbound callbacks, in seconds.
        shutdown_grace_period: How long workers get to stop before being cancelled.
        cron_timezone: IANA zone cron expressions are evaluated in.
        log_level: Root logging level name.
    """

    endpoint: str
    secret: str
    database_url: str
    host: str = DEFAULT_HOST
    port: int = int(DEFAULT_PORT)
    callback_timeout: float = float(DEFAULT_CALLBACK_TIMEOUT)
    shutdown_grace_period: float = float(DEFAULT_SHUTDOWN_GRACE_PERIOD)
    cron_timezone: str = "UTC"
    log_level: str = "INFO"


def _number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Read Settings from the environment, raising ConfigError on bad input."""
    load_dotenv(env_file)

    missing = [name for name in REQUIRED_VARIABLES if not os.getenv(name)]
    if missing:
        raise ConfigError(f"missing {', '.join(missing)} environment variable(s)")

    cron_timezone = os.getenv("CRON_TIMEZONE", "UTC")
    try:
        pytz.timezone(cron_timezone)
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"CRON_TIMEZONE {cron_timezone!r} is not a known timezone")

    return Settings(
        endpoint=os.environ["ENDPOINT"],
        secret=os.environ["SECRET"],
        database_url=os.environ["DATABASE_URL"],
        host=os.getenv("HOST", DEFAULT_HOST),
        port=_number("PORT", DEFAULT_PORT, int),
        callback_timeout=_number("CALLBACK_TIMEOUT", DEFAULT_CALLBACK_TIMEOUT, float),
        shutdown_grace_period=_number(
            "SHUTDOWN_GRACE_PERIOD", DEFAULT_SHUTDOWN_GRACE_PERIOD, float
        ),
        cron_timezone=cron_timezone,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
