from urllib.parse import parse_qs

import pytest

from conftest import TOKEN_URL, make_session_payload
from healermy.session import SessionData
from healermy.token_refresh import (
    TokenExchangeError,
    TokenRefreshError,
    exchange_authorization_code,
    is_token_expiring_soon,
    refresh_access_token,
    refresh_session_if_needed,
)

NOW = 1_700_000_000_000


def _session(**overrides):
    payload = make_session_payload(
        refreshToken="refresh-1",
        clientId="client",
        clientSecret="secret",
        expiresAt=NOW + 2 * 60 * 1000,
    )
    payload.update(overrides)
    return SessionData.model_validate(payload)


def test_is_token_expiring_soon_window():
    assert is_token_expiring_soon(NOW + 4 * 60 * 1000, now=NOW)
    assert is_token_expiring_soon(NOW - 1, now=NOW)
    assert not is_token_expiring_soon(NOW + 10 * 60 * 1000, now=NOW)
    assert not is_token_expiring_soon(None, now=NOW)


def test_refresh_access_token_posts_form_with_basic_auth(requests_mock):
    m = requests_mock.post(TOKEN_URL, json={"access_token": "new", "expires_in": 600})
    data = refresh_access_token("refresh-1", TOKEN_URL, "client", "secret")
    assert data["access_token"] == "new"
    sent = m.last_request
    assert sent.headers["Authorization"].startswith("Basic ")
    assert parse_qs(sent.text) == {"grant_type": ["refresh_token"], "refresh_token": ["refresh-1"]}


def test_refresh_access_token_error_status(requests_mock):
    requests_mock.post(TOKEN_URL, status_code=400, text="invalid_grant")
    with pytest.raises(TokenRefreshError) as excinfo:
        refresh_access_token("refresh-1", TOKEN_URL, "client", "secret")
    assert excinfo.value.status_code == 400


def test_refresh_access_token_requires_access_token(requests_mock):
    requests_mock.post(TOKEN_URL, json={"token_type": "bearer"})
    with pytest.raises(TokenRefreshError):
        refresh_access_token("refresh-1", TOKEN_URL, "client", "secret")


def test_exchange_code_confidential_client_uses_basic_auth(requests_mock):
    m = requests_mock.post(TOKEN_URL, json={"access_token": "a", "refresh_token": "r"})
    data = exchange_authorization_code(
        "code-1", TOKEN_URL, "client", "https://app/callback", client_secret="secret", code_verifier="v"
    )
    assert data["refresh_token"] == "r"
    sent = m.last_request
    assert sent.headers["Authorization"].startswith("Basic ")
    assert sent.headers["Accept"] == "application/json"
    assert parse_qs(sent.text) == {
        "grant_type": ["authorization_code"],
        "code": ["code-1"],
        "redirect_uri": ["https://app/callback"],
        "code_verifier": ["v"],
    }


def test_exchange_code_public_client_sends_client_id(requests_mock):
    m = requests_mock.post(TOKEN_URL, json={"access_token": "a"})
    exchange_authorization_code("code-1", TOKEN_URL, "client", "https://app/callback")
    sent = m.last_request
    assert "Authorization" not in sent.headers
    form = parse_qs(sent.text)
    assert form["client_id"] == ["client"]
    assert "code_verifier" not in form


def test_exchange_code_error_keeps_upstream_status(requests_mock):
    requests_mock.post(TOKEN_URL, status_code=401, text="invalid_client")
    with pytest.raises(TokenExchangeError) as excinfo:
        exchange_authorization_code("code-1", TOKEN_URL, "client", "https://app/callback")
    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "Token exchange failed: 401 - invalid_client"


def test_session_refreshed_near_expiry(requests_mock):
    requests_mock.post(TOKEN_URL, json={"access_token": "fresh", "refresh_token": "refresh-2"})
    refreshed, did_refresh = refresh_session_if_needed(_session(), now=NOW)
    assert did_refresh
    assert refreshed.access_token == "fresh"
    assert refreshed.refresh_token == "refresh-2"
    assert refreshed.expires_at == NOW + 3600 * 1000


def test_session_not_refreshed_when_far_from_expiry(requests_mock):
    session = _session(expiresAt=NOW + 60 * 60 * 1000)
    result, did_refresh = refresh_session_if_needed(session, now=NOW)
    assert result is session
    assert not did_refresh
    assert not requests_mock.called


def test_session_without_refresh_credentials_is_returned_as_is(requests_mock):
    session = _session(refreshToken=None)
    result, did_refresh = refresh_session_if_needed(session, now=NOW)
    assert result is session
    assert not did_refresh
    assert not requests_mock.called


def test_failed_refresh_keeps_original_session(requests_mock):
    requests_mock.post(TOKEN_URL, status_code=401)
    session = _session()
    result, did_refresh = refresh_session_if_needed(session, now=NOW)
    assert result is session
    assert not did_refresh
