"""Runtime configuration for the portal backend."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple


DEFAULT_SESSION_EXPIRY = "7d"
DEFAULT_SESSION_EXPIRY_SECONDS = 7 * 24 * 60 * 60

_EXPIRY_RE = re.compile(r"^(\d+)([smhdy])$")
_EXPIRY_UNITS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


@dataclass(frozen=True)
class PortalSettings:
    """Resolved settings for the portal backend."""

    environment: str = "development"
    log_level: str = "INFO"
    session_secret: Optional[str] = None
    session_salt: Optional[str] = None
    session_cookie_name: str = "healermy_session"
    session_expiry: str = DEFAULT_SESSION_EXPIRY
    trust_proxy_session_header: bool = False
    fhir_request_timeout: float = 15.0
    token_refresh_buffer_minutes: int = 5
    cors_allowed_origins: Tuple[str, ...] = ()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @property
    def session_expiry_seconds(self) -> int:
        return parse_session_expiry(self.session_expiry)

    def require_session_keys(self) -> Tuple[str, str]:
        """Return ``(secret, salt)`` or raise when either is missing."""

        if not self.session_secret:
            raise ConfigurationError("SESSION_SECRET environment variable is required")
        if not self.session_salt:
            raise ConfigurationError("SESSION_SALT environment variable is required")
        return self.session_secret, self.session_salt


def parse_session_expiry(value: Optional[str]) -> int:
    """Convert an expiry such as ``"7d"`` or ``"30m"`` into seconds.

    Unrecognised values fall back to seven days.
    """

    if not value:
        return DEFAULT_SESSION_EXPIRY_SECONDS
    match = _EXPIRY_RE.match(value.strip())
    if not match:
        return DEFAULT_SESSION_EXPIRY_SECONDS
    amount, unit = match.groups()
    return int(amount) * _EXPIRY_UNITS[unit]


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> PortalSettings:
    """Return the active settings derived from the environment."""

    origins = tuple(
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    )
    return PortalSettings(
        environment=os.getenv("ENVIRONMENT", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        session_secret=os.getenv("SESSION_SECRET") or None,
        session_salt=os.getenv("SESSION_SALT") or None,
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "healermy_session"),
        session_expiry=os.getenv("SESSION_EXPIRY", DEFAULT_SESSION_EXPIRY),
        trust_proxy_session_header=_env_flag("SESSION_TRUST_PROXY_HEADER"),
        fhir_request_timeout=_get_float_env("FHIR_REQUEST_TIMEOUT", 15.0),
        token_refresh_buffer_minutes=_get_int_env("TOKEN_REFRESH_BUFFER_MINUTES", 5),
        cors_allowed_origins=origins,
    )


__all__ = [
    "ConfigurationError",
    "DEFAULT_SESSION_EXPIRY_SECONDS",
    "PortalSettings",
    "get_settings",
    "parse_session_expiry",
]
