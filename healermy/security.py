"""Security helpers for log redaction, identifier hashing and metrics."""

from __future__ import annotations

import hashlib
from typing import Any, Iterable, Mapping, Optional

from prometheus_client import REGISTRY, Counter

# Keys that must never leave the server or appear in logs.
SENSITIVE_KEYS = frozenset(
    {"accessToken", "refreshToken", "clientSecret", "clientId", "codeVerifier", "launchToken"}
)


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


SESSION_LOOKUPS_TOTAL = _get_or_create_metric(
    Counter,
    "healermy_session_lookups_total",
    "Session lookups by resulting status",
    ("status",),
)

TOKEN_REFRESH_TOTAL = _get_or_create_metric(
    Counter,
    "healermy_token_refresh_total",
    "Access token refresh attempts by outcome",
    ("outcome",),
)

COMMUNICATION_MUTATIONS_TOTAL = _get_or_create_metric(
    Counter,
    "healermy_communication_mutations_total",
    "Communication mutations issued against the FHIR store",
    ("action", "outcome"),
)

FHIR_FAILURES_TOTAL = _get_or_create_metric(
    Counter,
    "healermy_fhir_failures_total",
    "Failed FHIR requests by HTTP status",
    ("status",),
)


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


def scrub_secrets(value: Any) -> Any:
    """Drop credential keys from *value* recursively."""

    if isinstance(value, Mapping):
        return {
            key: scrub_secrets(sub_value)
            for key, sub_value in value.items()
            if key not in SENSITIVE_KEYS
        }
    if isinstance(value, Iterable) and not isinstance(value, (str, bytes, bytearray)):
        return [scrub_secrets(item) for item in value]
    return value


__all__ = [
    "COMMUNICATION_MUTATIONS_TOTAL",
    "FHIR_FAILURES_TOTAL",
    "SENSITIVE_KEYS",
    "SESSION_LOOKUPS_TOTAL",
    "TOKEN_REFRESH_TOTAL",
    "hash_identifier",
    "scrub_secrets",
]
