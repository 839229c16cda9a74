"""Session model, cookie handling and the session reader.

The authenticated session lives entirely inside the encrypted
``healermy_session`` cookie.  An upstream proxy that has already decrypted
(and possibly refreshed) the session may instead forward it as plain JSON in
the ``x-session-data`` header; that header is only honoured when
``SESSION_TRUST_PROXY_HEADER`` is enabled.

:func:`read_session` never raises for a missing or unusable session.  It
returns a :class:`SessionLookup` tagged with a :class:`SessionStatus` so
route handlers can decide between 401 responses and normal processing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.responses import Response

from healermy.config import PortalSettings, get_settings
from healermy.encryption import DecryptionError, decrypt_session, encrypt_session
from healermy.security import SESSION_LOOKUPS_TOTAL, hash_identifier
from healermy.time_utils import now_ms, seconds_until

logger = structlog.get_logger(__name__)

SESSION_HEADER_NAME = "x-session-data"

PATIENT_ROLE = "patient"
PROVIDER_ROLES = frozenset({"provider", "practitioner"})

# Cookies written by earlier releases that split the session across values.
LEGACY_AUTH_COOKIES = (
    "auth_session",
    "auth_access_token",
    "auth_refresh_token",
    "auth_token_url",
    "auth_expires_at",
    "auth_patient_id",
    "auth_fhir_base_url",
    "auth_user_role",
)

OAUTH_STATE_COOKIE_PREFIX = "oauth_state_"
OAUTH_STATE_MAX_AGE = 300

_REDACTED_FIELDS = (
    "role",
    "fhir_base_url",
    "patient",
    "practitioner",
    "expires_at",
    "token_url",
    "patient_name",
    "practitioner_name",
)


class SessionError(Exception):
    """Raised when a session is unusable for the requested operation."""


class SessionData(BaseModel):
    """Everything the portal keeps about an authenticated user.

    Field aliases match the JSON stored in the cookie.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: str
    patient: Optional[str] = None
    practitioner: Optional[str] = None
    fhir_user: Optional[str] = Field(default=None, alias="fhirUser")
    user: Optional[str] = None
    username: Optional[str] = None
    patient_name: Optional[str] = Field(default=None, alias="patientName")
    practitioner_name: Optional[str] = Field(default=None, alias="practitionerName")
    access_token: Optional[str] = Field(default=None, alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")
    expires_at: Optional[int] = Field(default=None, alias="expiresAt")
    token_url: str = Field(default="", alias="tokenUrl")
    revoke_url: str = Field(default="", alias="revokeUrl")
    fhir_base_url: str = Field(default="", alias="fhirBaseUrl")
    scope: Optional[str] = None
    tenant: Optional[str] = None

    @classmethod
    def from_callback(cls, payload: Mapping[str, Any]) -> "SessionData":
        """Build a session from the token-exchange payload posted by the client.

        ``iss`` is accepted as the FHIR base URL when ``fhirBaseUrl`` is absent.
        """

        data = dict(payload)
        if not data.get("fhirBaseUrl"):
            data["fhirBaseUrl"] = data.get("iss") or ""
        data.setdefault("tokenUrl", "")
        data.setdefault("revokeUrl", "")
        return cls.model_validate(data)

    @property
    def is_provider(self) -> bool:
        return self.role in PROVIDER_ROLES

    @property
    def is_complete(self) -> bool:
        return bool(self.access_token and self.access_token.strip() and self.fhir_base_url)

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        current = now_ms() if now is None else now
        return self.expires_at <= current

    def bearer_token(self) -> str:
        if not self.access_token:
            raise SessionError("Incomplete session data")
        return self.access_token.strip()

    def to_cookie_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def redacted(self) -> Dict[str, Any]:
        """Return the projection that is safe to hand to the browser.

        ``userReference`` lets clients match recipients exactly the way the
        server resolves the signed-in user.
        """

        dumped = self.model_dump(include=set(_REDACTED_FIELDS), by_alias=True)
        projection = {key: value for key, value in dumped.items() if value is not None}
        projection["userReference"] = user_reference(self)
        return projection


class SessionStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    ABSENT = "absent"
    INVALID = "invalid"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class SessionLookup:
    """Outcome of reading the session from a request."""

    status: SessionStatus
    session: Optional[SessionData] = None
    source: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    def status_payload(self) -> Dict[str, Any]:
        """Body for the session-status endpoint."""

        if self.authenticated and self.session is not None:
            return {"authenticated": True, "session": self.session.redacted()}
        if self.status is SessionStatus.EXPIRED:
            return {"authenticated": False, "expired": True}
        return {"authenticated": False}


def _classify(session: SessionData, source: str, now: Optional[int]) -> SessionLookup:
    if session.is_expired(now):
        return SessionLookup(SessionStatus.EXPIRED, session, source)
    if not session.is_complete:
        return SessionLookup(SessionStatus.INCOMPLETE, session, source)
    return SessionLookup(SessionStatus.AUTHENTICATED, session, source)


def _from_header(raw: str) -> Optional[SessionData]:
    try:
        return SessionData.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError, TypeError):
        logger.warning("session_header_unparseable")
        return None


def read_session(
    cookies: Mapping[str, str],
    headers: Optional[Mapping[str, str]] = None,
    *,
    settings: Optional[PortalSettings] = None,
    now: Optional[int] = None,
) -> SessionLookup:
    """Extract and validate the session carried by a request."""

    resolved = settings or get_settings()
    lookup = _read(cookies, headers or {}, resolved, now)
    SESSION_LOOKUPS_TOTAL.labels(status=lookup.status.value).inc()
    if lookup.session is not None and not lookup.authenticated:
        logger.info(
            "session_rejected",
            status=lookup.status.value,
            role=lookup.session.role,
            subject=hash_identifier(lookup.session.patient or lookup.session.practitioner),
        )
    return lookup


def _read(
    cookies: Mapping[str, str],
    headers: Mapping[str, str],
    settings: PortalSettings,
    now: Optional[int],
) -> SessionLookup:
    if settings.trust_proxy_session_header:
        raw_header = headers.get(SESSION_HEADER_NAME)
        if raw_header:
            session = _from_header(raw_header)
            if session is not None:
                return _classify(session, "header", now)

    cookie_value = cookies.get(settings.session_cookie_name)
    if not cookie_value:
        return SessionLookup(SessionStatus.ABSENT)
    try:
        payload = decrypt_session(cookie_value, settings=settings)
        session = SessionData.model_validate(payload)
    except DecryptionError:
        logger.warning("session_cookie_decrypt_failed")
        return SessionLookup(SessionStatus.INVALID, source="cookie")
    except ValidationError:
        logger.warning("session_cookie_invalid_payload")
        return SessionLookup(SessionStatus.INVALID, source="cookie")
    return _classify(session, "cookie", now)


def cookie_max_age(
    session: SessionData,
    *,
    settings: Optional[PortalSettings] = None,
    now: Optional[int] = None,
) -> int:
    """Lifetime of the session cookie in seconds.

    Offline access (a refresh token is present) keeps the cookie for the
    configured ``SESSION_EXPIRY``; otherwise the cookie dies with the access
    token.
    """

    resolved = settings or get_settings()
    if session.refresh_token:
        return resolved.session_expiry_seconds
    if session.expires_at:
        return seconds_until(session.expires_at, now=now) or 0
    return resolved.session_expiry_seconds


def set_session_cookie(
    response: Response,
    session: SessionData,
    *,
    settings: Optional[PortalSettings] = None,
    max_age: Optional[int] = None,
) -> None:
    resolved = settings or get_settings()
    token = encrypt_session(session.to_cookie_payload(), settings=resolved)
    response.set_cookie(
        resolved.session_cookie_name,
        token,
        max_age=cookie_max_age(session, settings=resolved) if max_age is None else max_age,
        path="/",
        httponly=True,
        secure=resolved.is_production,
        samesite="strict",
    )


def clear_session_cookie(response: Response, *, settings: Optional[PortalSettings] = None) -> None:
    resolved = settings or get_settings()
    response.set_cookie(
        resolved.session_cookie_name,
        "",
        max_age=0,
        path="/",
        httponly=True,
        secure=resolved.is_production,
        samesite="strict",
    )


def clear_legacy_cookies(response: Response, *, settings: Optional[PortalSettings] = None) -> None:
    resolved = settings or get_settings()
    for name in LEGACY_AUTH_COOKIES:
        response.set_cookie(
            name,
            "",
            max_age=0,
            path="/",
            httponly=True,
            secure=resolved.is_production,
            samesite="lax",
        )


class OAuthState(BaseModel):
    """Launch context kept between the authorize redirect and the callback."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    iss: str = Field(min_length=1)
    role: Literal["patient", "provider", "practitioner"]
    code_verifier: Optional[str] = Field(default=None, alias="codeVerifier")
    token_url: Optional[str] = Field(default=None, alias="tokenUrl")
    revoke_url: Optional[str] = Field(default=None, alias="revokeUrl")
    launch_token: Optional[str] = Field(default=None, alias="launchToken")
    timestamp: int = 0

    def is_expired(self, now: Optional[int] = None) -> bool:
        current = now_ms() if now is None else now
        return current - self.timestamp > OAUTH_STATE_MAX_AGE * 1000

    def to_client_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"timestamp"})


def oauth_state_cookie_name(state: str) -> str:
    return f"{OAUTH_STATE_COOKIE_PREFIX}{state}"


def set_oauth_state_cookie(
    response: Response,
    state: str,
    data: OAuthState,
    *,
    settings: Optional[PortalSettings] = None,
) -> None:
    resolved = settings or get_settings()
    token = encrypt_session(data.model_dump(by_alias=True, exclude_none=True), settings=resolved)
    response.set_cookie(
        oauth_state_cookie_name(state),
        token,
        max_age=OAUTH_STATE_MAX_AGE,
        path="/",
        httponly=True,
        secure=resolved.is_production,
        samesite="lax",
    )


def read_oauth_state(
    cookies: Mapping[str, str],
    state: str,
    *,
    settings: Optional[PortalSettings] = None,
    now: Optional[int] = None,
) -> OAuthState:
    """Decrypt the stored launch context for *state* or raise :class:`SessionError`."""

    raw = cookies.get(oauth_state_cookie_name(state))
    if not raw:
        raise SessionError("Invalid or expired OAuth state")
    try:
        data = OAuthState.model_validate(decrypt_session(raw, settings=settings))
    except (DecryptionError, ValidationError) as exc:
        logger.warning("oauth_state_invalid", error=type(exc).__name__)
        raise SessionError("Invalid OAuth state data") from exc
    if data.is_expired(now):
        logger.warning("oauth_state_expired", age_ms=(now_ms() if now is None else now) - data.timestamp)
        raise SessionError("OAuth state expired")
    return data


def clear_oauth_state_cookie(
    response: Response, state: str, *, settings: Optional[PortalSettings] = None
) -> None:
    resolved = settings or get_settings()
    response.set_cookie(
        oauth_state_cookie_name(state),
        "",
        max_age=0,
        path="/",
        httponly=True,
        secure=resolved.is_production,
        samesite="lax",
    )


def user_reference(session: SessionData) -> str:
    """FHIR reference for the signed-in user."""

    if session.role == PATIENT_ROLE:
        return f"Patient/{session.patient}"
    if session.practitioner:
        return f"Practitioner/{session.practitioner}"
    fhir_user = session.fhir_user or ""
    # fhirUser may already be a relative or absolute Practitioner reference.
    if "Practitioner/" in fhir_user:
        return "Practitioner/" + fhir_user.rsplit("Practitioner/", 1)[1]
    return f"Practitioner/{fhir_user or session.patient}"


def validate_role(session: SessionData, required_role: str) -> None:
    if required_role == "provider":
        if not session.is_provider:
            raise SessionError("Unauthorized: provider role required")
        return
    if session.role != required_role:
        raise SessionError(f"Unauthorized: {required_role} role required")


__all__ = [
    "LEGACY_AUTH_COOKIES",
    "OAUTH_STATE_COOKIE_PREFIX",
    "OAUTH_STATE_MAX_AGE",
    "OAuthState",
    "PATIENT_ROLE",
    "PROVIDER_ROLES",
    "SESSION_HEADER_NAME",
    "SessionData",
    "SessionError",
    "SessionLookup",
    "SessionStatus",
    "clear_legacy_cookies",
    "clear_oauth_state_cookie",
    "clear_session_cookie",
    "cookie_max_age",
    "oauth_state_cookie_name",
    "read_oauth_state",
    "read_session",
    "set_oauth_state_cookie",
    "set_session_cookie",
    "user_reference",
    "validate_role",
]
