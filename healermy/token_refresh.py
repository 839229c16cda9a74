"""OAuth2 token endpoint calls: authorization code exchange and refresh."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import requests
import structlog

from healermy.config import PortalSettings, get_settings
from healermy.security import TOKEN_REFRESH_TOTAL, hash_identifier
from healermy.session import SessionData
from healermy.time_utils import now_ms

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenRefreshError(Exception):
    """Raised when the authorization server rejects a refresh request."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenExchangeError(TokenRefreshError):
    """Raised when an authorization code cannot be exchanged for tokens."""


def is_token_expiring_soon(
    expires_at: Optional[int],
    buffer_minutes: int = 5,
    *,
    now: Optional[int] = None,
) -> bool:
    """Return ``True`` when *expires_at* (epoch ms) falls within the buffer."""

    if expires_at is None:
        return False
    current = now_ms() if now is None else now
    return expires_at - buffer_minutes * 60 * 1000 <= current


def refresh_access_token(
    refresh_token: str,
    token_url: str,
    client_id: str,
    client_secret: str,
    *,
    timeout: float = 10.0,
) -> Dict[str, Any]:
    """Exchange *refresh_token* for a new token response."""

    try:
        resp = requests.post(
            token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(client_id, client_secret),
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise TokenRefreshError(f"Token refresh request failed: {exc}") from exc
    if not resp.ok:
        raise TokenRefreshError(
            f"Token refresh failed: {resp.status_code} - {resp.text}",
            status_code=resp.status_code,
        )
    data = resp.json()
    if not isinstance(data, dict) or not data.get("access_token"):
        raise TokenRefreshError("Token refresh response did not include an access token")
    return data


def exchange_authorization_code(
    code: str,
    token_url: str,
    client_id: str,
    redirect_uri: str,
    *,
    client_secret: Optional[str] = None,
    code_verifier: Optional[str] = None,
    timeout: float = 10.0,
) -> Dict[str, Any]:
    """Trade an authorization *code* for tokens.

    Confidential clients authenticate with HTTP Basic; public clients send
    ``client_id`` in the form body.  ``code_verifier`` completes PKCE.
    """

    form = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
    if code_verifier:
        form["code_verifier"] = code_verifier
    auth = None
    if client_secret:
        auth = (client_id, client_secret)
    else:
        form["client_id"] = client_id
    try:
        resp = requests.post(
            token_url,
            data=form,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise TokenExchangeError(f"Token exchange request failed: {exc}") from exc
    if not resp.ok:
        raise TokenExchangeError(
            f"Token exchange failed: {resp.status_code} - {resp.text}",
            status_code=resp.status_code,
        )
    data = resp.json()
    if not isinstance(data, dict):
        raise TokenExchangeError("Token exchange response was not a JSON object")
    logger.info("authorization_code_exchanged", confidential=auth is not None, pkce=bool(code_verifier))
    return data


def _can_refresh(session: SessionData) -> bool:
    return bool(
        session.refresh_token
        and session.token_url
        and session.client_id
        and session.client_secret
    )


def refresh_session_if_needed(
    session: SessionData,
    *,
    settings: Optional[PortalSettings] = None,
    now: Optional[int] = None,
) -> Tuple[SessionData, bool]:
    """Return ``(session, refreshed)``.

    The original session is returned untouched when it is not close to
    expiry, lacks refresh credentials, or the refresh attempt fails.
    """

    resolved = settings or get_settings()
    current = now_ms() if now is None else now
    if not is_token_expiring_soon(
        session.expires_at, resolved.token_refresh_buffer_minutes, now=current
    ):
        return session, False
    subject = hash_identifier(session.patient or session.practitioner)
    if not _can_refresh(session):
        TOKEN_REFRESH_TOTAL.labels(outcome="unavailable").inc()
        logger.info("token_refresh_unavailable", role=session.role, subject=subject)
        return session, False
    try:
        token_data = refresh_access_token(
            session.refresh_token,  # type: ignore[arg-type]
            session.token_url,
            session.client_id,  # type: ignore[arg-type]
            session.client_secret,  # type: ignore[arg-type]
            timeout=resolved.fhir_request_timeout,
        )
    except TokenRefreshError as exc:
        TOKEN_REFRESH_TOTAL.labels(outcome="failed").inc()
        logger.warning(
            "token_refresh_failed",
            role=session.role,
            subject=subject,
            status_code=exc.status_code,
        )
        return session, False

    expires_in = token_data.get("expires_in") or DEFAULT_EXPIRES_IN
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    refreshed = session.model_copy(
        update={
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token") or session.refresh_token,
            "expires_at": current + expires_in * 1000,
        }
    )
    TOKEN_REFRESH_TOTAL.labels(outcome="refreshed").inc()
    logger.info("token_refreshed", role=session.role, subject=subject, expires_in=expires_in)
    return refreshed, True


__all__ = [
    "TokenExchangeError",
    "TokenRefreshError",
    "exchange_authorization_code",
    "is_token_expiring_soon",
    "refresh_access_token",
    "refresh_session_if_needed",
]
