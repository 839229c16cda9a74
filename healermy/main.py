"""HTTP API for the HealerMy portal backend.

Routes fall into two groups.  ``/api/auth/*`` manages the encrypted session
cookie written after the SMART on FHIR callback, and ``/api/fhir/*`` proxies
Communication operations to the FHIR server of the signed-in user, refreshing
the access token on the way when it is about to expire.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from healermy.communications import (
    DEFAULT_PAGE_SIZE,
    fetch_communications,
    to_bundle,
)
from healermy.config import ConfigurationError, get_settings
from healermy.fhir_client import FHIRClient, FHIRError
from healermy.security import COMMUNICATION_MUTATIONS_TOTAL, hash_identifier, scrub_secrets
from healermy.session import (
    OAuthState,
    SessionData,
    SessionError,
    SessionStatus,
    clear_legacy_cookies,
    clear_oauth_state_cookie,
    clear_session_cookie,
    read_oauth_state,
    read_session,
    set_oauth_state_cookie,
    set_session_cookie,
    user_reference,
    validate_role,
)
from healermy.time_utils import now_ms
from healermy.token_refresh import (
    TokenExchangeError,
    exchange_authorization_code,
    refresh_session_if_needed,
)

load_dotenv()

SETTINGS = get_settings()

logging.basicConfig(level=getattr(logging, SETTINGS.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

# 401 details for the FHIR routes, keyed by why the session was rejected.
_UNAUTHENTICATED_DETAIL = {
    SessionStatus.ABSENT: "No session found - authentication required",
    SessionStatus.INVALID: "Session decryption failed - invalid or corrupted session",
    SessionStatus.EXPIRED: "Session expired",
    SessionStatus.INCOMPLETE: "Incomplete session data",
}


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup", environment=SETTINGS.environment)
    yield
    logger.info("lifespan_shutdown_complete")


app = FastAPI(title="HealerMy Portal API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    request.state.trace_id = trace_id
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")


if SETTINGS.cors_allowed_origins:
    allow_all = any(o in {"*", "wildcard"} for o in SETTINGS.cors_allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else list(SETTINGS.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class CommunicationCreate(BaseModel):
    """Body of ``POST /api/fhir/communications``."""

    model_config = ConfigDict(populate_by_name=True)

    recipient: Optional[str] = None
    message: Optional[str] = None
    appointment_id: Optional[str] = Field(default=None, alias="appointmentId")
    category: str = "manual-message"


class TokenExchangeRequest(BaseModel):
    """Body of ``POST /api/auth/token-exchange``."""

    model_config = ConfigDict(populate_by_name=True)

    code: Optional[str] = None
    token_url: Optional[str] = Field(default=None, alias="tokenUrl")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri")
    code_verifier: Optional[str] = Field(default=None, alias="codeVerifier")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def require_session(request: Request, response: Response) -> SessionData:
    """Return the caller's session, refreshing its access token if needed.

    A refreshed session is written back into the cookie on the outgoing
    response.  Anything short of a usable session is a 401.
    """

    settings = get_settings()
    lookup = read_session(request.cookies, request.headers, settings=settings)
    session = lookup.session
    if session is not None and lookup.status in (SessionStatus.AUTHENTICATED, SessionStatus.EXPIRED):
        session, refreshed = refresh_session_if_needed(session, settings=settings)
        if refreshed and session.is_complete:
            set_session_cookie(response, session, settings=settings)
            return session
    if not lookup.authenticated or session is None:
        raise HTTPException(status_code=401, detail=_UNAUTHENTICATED_DETAIL[lookup.status])
    return session


def get_fhir_client(session: SessionData = Depends(require_session)) -> FHIRClient:
    return FHIRClient(
        session.fhir_base_url,
        session.bearer_token(),
        timeout=get_settings().fhir_request_timeout,
    )


def _fhir_http_error(exc: FHIRError, action: str) -> HTTPException:
    if exc.not_found:
        return HTTPException(status_code=404, detail="Communication not found")
    return HTTPException(
        status_code=502,
        detail={"error": f"Failed to {action}", "details": str(exc)},
    )


# ---------------------------------------------------------------------------
# Session routes
# ---------------------------------------------------------------------------


@app.get("/api/auth/session")
def get_session(request: Request):
    """Report whether the caller is signed in, without any credentials."""

    try:
        lookup = read_session(request.cookies, request.headers)
    except Exception:
        logger.exception("session_status_failed")
        return JSONResponse({"authenticated": False}, status_code=500)
    status_code = 200 if lookup.authenticated else 401
    return JSONResponse(lookup.status_payload(), status_code=status_code)


@app.delete("/api/auth/session")
def delete_session(response: Response) -> Dict[str, Any]:
    clear_session_cookie(response)
    logger.info("session_deleted")
    return {"success": True}


@app.post("/api/auth/create-session")
def create_session(payload: Dict[str, Any] = Body(...)):
    """Store the token-exchange result in the encrypted session cookie."""

    try:
        session = SessionData.from_callback(payload)
    except ValidationError as exc:
        logger.warning(
            "session_create_rejected",
            errors=exc.error_count(),
            fields=sorted(scrub_secrets(payload)),
        )
        return JSONResponse({"error": "Invalid session data"}, status_code=400)

    response = JSONResponse({"success": True})
    try:
        set_session_cookie(response, session)
    except ConfigurationError as exc:
        logger.exception("session_create_failed")
        return JSONResponse({"error": str(exc)}, status_code=500)
    logger.info(
        "session_created",
        role=session.role,
        subject=hash_identifier(session.patient or session.practitioner),
        offline_access=bool(session.refresh_token),
    )
    return response


@app.post("/api/auth/logout")
def logout(response: Response) -> Dict[str, Any]:
    clear_session_cookie(response)
    logger.info("session_logged_out")
    return {"success": True, "message": "Logged out successfully"}


@app.post("/api/clear-cookies")
def clear_cookies(response: Response) -> Dict[str, Any]:
    """Remove cookies left behind by the old split-cookie session format."""

    clear_legacy_cookies(response)
    return {"success": True, "message": "Legacy authentication cookies cleared"}


@app.post("/api/auth/token-exchange")
def token_exchange(body: TokenExchangeRequest):
    """Exchange the callback's authorization code at the token endpoint."""

    if not (body.code and body.token_url and body.client_id and body.redirect_uri):
        return JSONResponse({"error": "Missing required parameters for token exchange"}, status_code=400)
    try:
        return exchange_authorization_code(
            body.code,
            body.token_url,
            body.client_id,
            body.redirect_uri,
            client_secret=body.client_secret,
            code_verifier=body.code_verifier,
            timeout=get_settings().fhir_request_timeout,
        )
    except TokenExchangeError as exc:
        logger.warning("token_exchange_failed", status_code=exc.status_code)
        if exc.status_code is not None:
            return JSONResponse({"error": str(exc)}, status_code=exc.status_code)
    except Exception:
        logger.exception("token_exchange_error")
    return JSONResponse({"error": "Internal server error during token exchange"}, status_code=500)


@app.post("/api/auth/store-state")
def store_oauth_state(payload: Dict[str, Any] = Body(...)):
    """Keep the launch context for *state* in a short-lived encrypted cookie."""

    state = payload.get("state")
    if not state or not isinstance(state, str):
        return JSONResponse({"error": "Missing or invalid state parameter"}, status_code=400)
    data = payload.get("data")
    if not isinstance(data, dict) or not data.get("iss") or not data.get("role"):
        return JSONResponse({"error": "Missing required OAuth state data"}, status_code=400)
    try:
        oauth_state = OAuthState.model_validate({**data, "timestamp": now_ms()})
    except ValidationError as exc:
        logger.warning(
            "oauth_state_rejected",
            errors=exc.error_count(),
            fields=sorted(scrub_secrets(data)),
        )
        return JSONResponse({"error": "Missing required OAuth state data"}, status_code=400)

    response = JSONResponse({"success": True})
    try:
        set_oauth_state_cookie(response, state, oauth_state)
    except Exception:
        logger.exception("oauth_state_store_failed")
        return JSONResponse({"error": "Failed to store OAuth state"}, status_code=500)
    logger.info("oauth_state_stored", role=oauth_state.role, pkce=bool(oauth_state.code_verifier))
    return response


@app.get("/api/auth/retrieve-state")
def retrieve_oauth_state(request: Request, state: Optional[str] = None):
    """Return the stored launch context once; the cookie is always cleared."""

    if not state:
        return JSONResponse({"error": "Missing state parameter"}, status_code=400)
    try:
        oauth_state = read_oauth_state(request.cookies, state)
    except SessionError as exc:
        response = JSONResponse({"error": str(exc)}, status_code=400)
        clear_oauth_state_cookie(response, state)
        return response
    except Exception:
        logger.exception("oauth_state_retrieve_failed")
        return JSONResponse({"error": "Failed to retrieve OAuth state"}, status_code=500)
    response = JSONResponse(oauth_state.to_client_payload())
    clear_oauth_state_cookie(response, state)
    logger.info("oauth_state_retrieved", role=oauth_state.role)
    return response


# ---------------------------------------------------------------------------
# Communication routes
# ---------------------------------------------------------------------------


@app.get("/api/fhir/communications")
def list_communications(
    about: Optional[str] = None,
    count: int = Query(DEFAULT_PAGE_SIZE, alias="_count", ge=1, le=500),
    unread: bool = False,
    include_sent: bool = Query(False, alias="includeSent"),
    session: SessionData = Depends(require_session),
    client: FHIRClient = Depends(get_fhir_client),
) -> Dict[str, Any]:
    try:
        if unread:
            user_ref = None if session.is_provider else user_reference(session)
            total = client.get_unread_communications_count(user_ref)
            return {"total": total, "unread": True}
        messages = fetch_communications(
            client, session, about=about, count=count, include_sent=include_sent
        )
    except FHIRError as exc:
        raise _fhir_http_error(exc, "fetch communications") from exc
    return to_bundle(messages)


@app.post("/api/fhir/communications", status_code=201)
def create_communication(
    body: CommunicationCreate,
    session: SessionData = Depends(require_session),
    client: FHIRClient = Depends(get_fhir_client),
) -> Dict[str, Any]:
    if not body.recipient or not body.message:
        raise HTTPException(status_code=400, detail="Missing required fields: recipient, message")

    sender_ref = user_reference(session)
    patient_ref = next(
        (ref for ref in (body.recipient, sender_ref) if ref.startswith("Patient/")), None
    )
    try:
        if body.category == "manual-message":
            created = client.create_manual_message(
                sender_ref,
                body.recipient,
                body.message,
                body.appointment_id,
                subject=patient_ref,
            )
        else:
            created = client.create_categorised_message(
                sender_ref,
                body.recipient,
                body.message,
                body.category,
                subject=patient_ref or body.recipient,
                appointment_id=body.appointment_id,
            )
    except FHIRError as exc:
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="create", outcome="error").inc()
        raise _fhir_http_error(exc, "create communication") from exc
    logger.info("communication_created", role=session.role, category=body.category)
    return created


@app.get("/api/fhir/communications/{communication_id}")
def get_communication(
    communication_id: str,
    client: FHIRClient = Depends(get_fhir_client),
) -> Dict[str, Any]:
    try:
        return client.get_communication(communication_id)
    except FHIRError as exc:
        raise _fhir_http_error(exc, "fetch communication") from exc


@app.patch("/api/fhir/communications/{communication_id}")
def update_communication(
    communication_id: str,
    payload: Dict[str, Any] = Body(...),
    session: SessionData = Depends(require_session),
    client: FHIRClient = Depends(get_fhir_client),
) -> Dict[str, Any]:
    """Apply a named action, or merge the posted fields into the resource."""

    action = payload.get("action")
    try:
        if action == "mark-read":
            return client.mark_communication_as_read(communication_id)
        if action == "mark-deleted-by-provider":
            try:
                validate_role(session, "provider")
            except SessionError as exc:
                raise HTTPException(status_code=403, detail=str(exc)) from exc
            return client.mark_deleted_by_provider(communication_id)
        changes = {key: value for key, value in payload.items() if key != "action"}
        result = client.merge_update(communication_id, changes)
    except FHIRError as exc:
        COMMUNICATION_MUTATIONS_TOTAL.labels(action=action or "update", outcome="error").inc()
        raise _fhir_http_error(exc, "update communication") from exc
    COMMUNICATION_MUTATIONS_TOTAL.labels(action="update", outcome="ok").inc()
    return result


@app.delete("/api/fhir/communications/{communication_id}")
def delete_communication(
    communication_id: str,
    session: SessionData = Depends(require_session),
    client: FHIRClient = Depends(get_fhir_client),
) -> Dict[str, Any]:
    """Providers soft delete for the whole clinic; patients delete for real."""

    try:
        if session.is_provider:
            client.mark_deleted_by_provider(communication_id)
            message = "Communication hidden from provider view"
        else:
            client.delete_communication(communication_id)
            message = "Communication deleted successfully"
    except FHIRError as exc:
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="delete", outcome="error").inc()
        raise _fhir_http_error(exc, "delete communication") from exc
    logger.info("communication_deleted", role=session.role, soft=session.is_provider)
    return {"success": True, "message": message}


@app.get("/metrics", response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["app", "get_fhir_client", "require_session"]
