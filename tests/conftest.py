import os
import sys
from typing import Any, Dict

import pytest

# Ensure the repository root is on sys.path so tests can import the healermy package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('SESSION_SECRET', 'test-session-secret')
os.environ.setdefault('SESSION_SALT', 'test-session-salt')
os.environ.pop('SESSION_TRUST_PROXY_HEADER', None)

from healermy.config import get_settings  # noqa: E402
from healermy.encryption import encrypt_session  # noqa: E402
from healermy.time_utils import now_ms  # noqa: E402

FHIR_BASE = 'http://fhir.test'
TOKEN_URL = 'http://auth.test/token'


@pytest.fixture(autouse=True)
def _reset_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def configure(monkeypatch):
    """Set environment overrides and return the freshly resolved settings."""

    def _configure(**env: str):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        get_settings.cache_clear()
        return get_settings()

    return _configure


def make_session_payload(role: str = 'patient', **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'role': role,
        'accessToken': 'access-123',
        'fhirBaseUrl': FHIR_BASE,
        'expiresAt': now_ms() + 60 * 60 * 1000,
        'tokenUrl': TOKEN_URL,
    }
    if role == 'patient':
        payload['patient'] = 'p1'
    else:
        payload['practitioner'] = 'dr1'
    payload.update(overrides)
    return payload


def make_communication(comm_id: str, **fields: Any) -> Dict[str, Any]:
    comm: Dict[str, Any] = {
        'resourceType': 'Communication',
        'id': comm_id,
        'status': 'completed',
        'payload': [{'contentString': fields.pop('text', 'Hello')}],
    }
    comm.update(fields)
    return comm


def bundle_of(*resources: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'resourceType': 'Bundle',
        'type': 'searchset',
        'total': len(resources),
        'entry': [{'resource': resource} for resource in resources],
    }


@pytest.fixture
def session_cookie():
    """Return a factory producing an encrypted session cookie value."""

    def _cookie(role: str = 'patient', **overrides: Any) -> str:
        return encrypt_session(make_session_payload(role, **overrides))

    return _cookie
