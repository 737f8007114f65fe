"""
tokenpulse - Configuration

Settings are read from the environment once at startup.

Variables:
- TOKENPULSE_API_BASE: usage API base URL
- TOKENPULSE_CREDENTIAL_ENV: name of the variable holding the admin key
- TOKENPULSE_HISTORY_PATH: JSON file for the daily usage history
- TOKENPULSE_TIMEZONE: IANA zone for calendar boundaries (system zone if unset)
- TOKENPULSE_MAX_PAGES: pagination ceiling per fetch
- TOKENPULSE_HTTP_TIMEOUT: upstream request timeout, seconds
- TOKENPULSE_INITIAL_INTERVAL: delay before the second poll, seconds
- TOKENPULSE_HOST / TOKENPULSE_PORT: bind address of the status server
- LOG_LEVEL / LOG_FORMAT and OTEL_* are read by the observability module
"""

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .security.secrets import DEFAULT_CREDENTIAL_ENV


T = TypeVar("T")

DEFAULT_API_BASE = "https://api.openai.com"
DEFAULT_HISTORY_PATH = "~/.tokenpulse/history.json"
DEFAULT_MAX_PAGES = 10
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_INITIAL_INTERVAL = 15 * 60.0
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _env(name: str, default: T, parse: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except ValueError as e:
        raise ValueError(f"Invalid {name}={raw!r}: {e}") from e


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise ValueError("must be a positive integer")
    return value


def _positive_float(raw: str) -> float:
    value = float(raw)
    if value <= 0:
        raise ValueError("must be greater than zero")
    return value


def _timezone_name(raw: str) -> str:
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown time zone ({e})") from e
    return raw


@dataclass(frozen=True)
class MonitorSettings:
    """Runtime settings for the monitor and its status server."""
    api_base: str = DEFAULT_API_BASE
    credential_env: str = DEFAULT_CREDENTIAL_ENV
    history_path: str = DEFAULT_HISTORY_PATH
    timezone: Optional[str] = None
    max_pages: int = DEFAULT_MAX_PAGES
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    initial_interval: float = DEFAULT_INITIAL_INTERVAL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls) -> "MonitorSettings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: a variable is set to an invalid value; the message
                names the variable
        """
        return cls(
            api_base=_env("TOKENPULSE_API_BASE", DEFAULT_API_BASE, str).rstrip("/"),
            credential_env=_env("TOKENPULSE_CREDENTIAL_ENV", DEFAULT_CREDENTIAL_ENV, str),
            history_path=_env("TOKENPULSE_HISTORY_PATH", DEFAULT_HISTORY_PATH, str),
            timezone=_env("TOKENPULSE_TIMEZONE", None, _timezone_name),
            max_pages=_env("TOKENPULSE_MAX_PAGES", DEFAULT_MAX_PAGES, _positive_int),
            http_timeout=_env("TOKENPULSE_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, _positive_float),
            initial_interval=_env(
                "TOKENPULSE_INITIAL_INTERVAL",
                DEFAULT_INITIAL_INTERVAL,
                _positive_float,
            ),
            host=_env("TOKENPULSE_HOST", DEFAULT_HOST, str),
            port=_env("TOKENPULSE_PORT", DEFAULT_PORT, _positive_int),
        )
