"""Fetching, de-duplication and classification of Communication messages."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

from healermy.fhir_client import FHIRClient, bundle_resources, is_deleted_by_provider
from healermy.session import SessionData, user_reference
from healermy.time_utils import sort_key_for_instant

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


class MessageKind(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    REMINDER = "reminder"
    TEST_RESULTS = "test_results"
    PRESCRIPTION = "prescription"
    APPOINTMENT_UPDATE = "appointment_update"
    MANUAL_MESSAGE = "manual_message"
    SYSTEM = "system"
    GENERAL = "general"


MESSAGE_TITLES = {
    MessageKind.CONFIRMED: "Appointment Confirmed",
    MessageKind.CANCELLED: "Appointment Cancelled",
    MessageKind.RESCHEDULED: "Appointment Rescheduled",
    MessageKind.REMINDER: "Appointment Reminder",
    MessageKind.TEST_RESULTS: "Test Results Available",
    MessageKind.PRESCRIPTION: "Prescription Update",
    MessageKind.APPOINTMENT_UPDATE: "Appointment Update",
    MessageKind.MANUAL_MESSAGE: "Message from Provider",
    MessageKind.SYSTEM: "System Notification",
    MessageKind.GENERAL: "Healthcare Message",
}

# FHIR AppointmentStatus codes carried in Communication.topic.
_TOPIC_KINDS = {
    "booked": MessageKind.CONFIRMED,
    "fulfilled": MessageKind.CONFIRMED,
    "arrived": MessageKind.CONFIRMED,
    "checked-in": MessageKind.CONFIRMED,
    "cancelled": MessageKind.CANCELLED,
    "noshow": MessageKind.CANCELLED,
    "proposed": MessageKind.APPOINTMENT_UPDATE,
    "pending": MessageKind.APPOINTMENT_UPDATE,
    "waitlist": MessageKind.APPOINTMENT_UPDATE,
}

_APPOINTMENT_CATEGORIES = {"appointment-update", "appointment status update", "notification"}
_MANUAL_CATEGORIES = {"manual-message", "manual message", "instruction"}
_SYSTEM_CATEGORIES = {"system-notification"}

_CONTENT_RULES: Sequence[tuple] = (
    (("confirmed", "approved"), MessageKind.CONFIRMED),
    (("cancelled", "canceled"), MessageKind.CANCELLED),
    (("reschedule",), MessageKind.RESCHEDULED),
    (("reminder",), MessageKind.REMINDER),
    (("test result", "lab result"), MessageKind.TEST_RESULTS),
    (("prescription", "medication"), MessageKind.PRESCRIPTION),
)

_PATIENT_FACING_PHRASES = (
    "your appointment request has been submitted",
    "your appointment has been",
    "you have been",
    "thank you for",
    "approved and confirmed",
)


def message_text(comm: Mapping[str, Any]) -> str:
    for part in comm.get("payload") or []:
        if isinstance(part, Mapping) and isinstance(part.get("contentString"), str):
            return part["contentString"]
    return ""


def appointment_reference(comm: Mapping[str, Any]) -> Optional[str]:
    """Return the first ``Appointment/<id>`` reference in ``about``."""

    for ref in comm.get("about") or []:
        value = ref.get("reference") if isinstance(ref, Mapping) else None
        if isinstance(value, str) and value.startswith("Appointment/"):
            return value
    return None


def appointment_id(comm: Mapping[str, Any]) -> Optional[str]:
    ref = appointment_reference(comm)
    return ref.split("/", 1)[1] if ref else None


def recipient_references(comm: Mapping[str, Any]) -> List[str]:
    refs = []
    for recipient in comm.get("recipient") or []:
        value = recipient.get("reference") if isinstance(recipient, Mapping) else None
        if isinstance(value, str):
            refs.append(value)
    return refs


def is_received_by(comm: Mapping[str, Any], user_ref: str) -> bool:
    return user_ref in recipient_references(comm)


def _category_tokens(comm: Mapping[str, Any]) -> List[str]:
    tokens = []
    for category in comm.get("category") or []:
        if not isinstance(category, Mapping):
            continue
        text = category.get("text")
        if isinstance(text, str) and text.strip():
            tokens.append(text.strip().lower())
        for coding in category.get("coding") or []:
            code = coding.get("code") if isinstance(coding, Mapping) else None
            if isinstance(code, str) and code.strip():
                tokens.append(code.strip().lower())
    return tokens


def _topic_kind(comm: Mapping[str, Any]) -> Optional[MessageKind]:
    topic = comm.get("topic")
    if not isinstance(topic, Mapping):
        return None
    candidates = [topic.get("text")]
    candidates.extend(
        coding.get("code") for coding in topic.get("coding") or [] if isinstance(coding, Mapping)
    )
    for value in candidates:
        if isinstance(value, str) and value.strip().lower() in _TOPIC_KINDS:
            return _TOPIC_KINDS[value.strip().lower()]
    return None


def _kind_from_text(text: str) -> Optional[MessageKind]:
    lowered = text.lower()
    for needles, kind in _CONTENT_RULES:
        if any(needle in lowered for needle in needles):
            return kind
    return None


def classify_message(comm: Mapping[str, Any]) -> MessageKind:
    """Derive the message kind, preferring typed fields over payload text.

    Order: appointment status in ``topic``, then the category code or text,
    and only then keyword matching on the payload.
    """

    typed = _topic_kind(comm)
    if typed is not None:
        return typed
    categories = set(_category_tokens(comm))
    if categories & _MANUAL_CATEGORIES:
        return MessageKind.MANUAL_MESSAGE
    if categories & _SYSTEM_CATEGORIES:
        return MessageKind.SYSTEM
    sniffed = _kind_from_text(message_text(comm))
    if categories & _APPOINTMENT_CATEGORIES:
        if sniffed in (MessageKind.CONFIRMED, MessageKind.CANCELLED, MessageKind.RESCHEDULED, MessageKind.REMINDER):
            return sniffed
        return MessageKind.APPOINTMENT_UPDATE
    return sniffed or MessageKind.GENERAL


def message_title(comm: Mapping[str, Any]) -> str:
    return MESSAGE_TITLES[classify_message(comm)]


def is_patient_facing(comm: Mapping[str, Any]) -> bool:
    """Return ``True`` for messages addressed to a patient.

    Recipients decide when present; phrase matching covers messages
    without recipient references.
    """

    recipients = recipient_references(comm)
    if recipients:
        return all(ref.startswith("Patient/") for ref in recipients)
    lowered = message_text(comm).lower()
    return any(phrase in lowered for phrase in _PATIENT_FACING_PHRASES)


def sort_newest_first(messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(
        (dict(message) for message in messages),
        key=lambda comm: sort_key_for_instant(comm.get("sent")),
        reverse=True,
    )


def merge_unique(*groups: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Union of message groups, first occurrence per id wins, newest first."""

    seen = set()
    merged: List[Dict[str, Any]] = []
    for group in groups:
        for comm in group:
            comm_id = comm.get("id")
            if comm_id is not None:
                if comm_id in seen:
                    continue
                seen.add(comm_id)
            merged.append(dict(comm))
    return sort_newest_first(merged)


def dedupe_by_appointment(messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Keep one message per linked appointment: the most recently sent.

    A later ``sent`` timestamp replaces the kept message in place; an exact
    tie keeps the first one encountered.  Messages without an appointment
    reference pass through untouched.
    """

    result: List[Dict[str, Any]] = []
    slots: Dict[str, int] = {}
    for comm in messages:
        ref = appointment_reference(comm)
        if ref is None:
            result.append(dict(comm))
            continue
        if ref not in slots:
            slots[ref] = len(result)
            result.append(dict(comm))
            continue
        kept = result[slots[ref]]
        if sort_key_for_instant(comm.get("sent")) > sort_key_for_instant(kept.get("sent")):
            result[slots[ref]] = dict(comm)
    return result


def fetch_communications(
    client: FHIRClient,
    session: SessionData,
    *,
    about: Optional[str] = None,
    count: int = DEFAULT_PAGE_SIZE,
    include_sent: bool = False,
) -> List[Dict[str, Any]]:
    """Return the messages visible to the signed-in user, newest first.

    Providers get the clinic-wide list without messages they soft deleted.
    Patients only get messages addressed to them; provider deletions do not
    affect their view.
    """

    options: Dict[str, Any] = {"_count": count, "_sort": "-sent"}
    if about:
        options["about"] = about if about.startswith("Appointment/") else f"Appointment/{about}"

    if session.is_provider:
        resources = bundle_resources(client.search_communications(**options))
        visible = [comm for comm in resources if not is_deleted_by_provider(comm)]
        logger.debug(
            "communications_fetched",
            role=session.role,
            total=len(resources),
            hidden=len(resources) - len(visible),
        )
        return sort_newest_first(visible)

    user_ref = user_reference(session)
    received = bundle_resources(client.search_communications(recipient=user_ref, **options))
    if not include_sent:
        return sort_newest_first(received)
    sent = bundle_resources(client.search_communications(sender=user_ref, **options))
    return merge_unique(received, sent)


def unread_count(
    messages: Iterable[Mapping[str, Any]],
    viewer_ref: Optional[str],
    is_read: Callable[[Mapping[str, Any]], bool],
) -> int:
    """Count unread messages addressed to *viewer_ref* (any recipient if ``None``)."""

    return sum(
        1
        for comm in messages
        if (viewer_ref is None or is_received_by(comm, viewer_ref)) and not is_read(comm)
    )


def to_bundle(messages: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(messages),
        "entry": [{"resource": dict(comm)} for comm in messages],
    }


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MESSAGE_TITLES",
    "MessageKind",
    "appointment_id",
    "appointment_reference",
    "classify_message",
    "dedupe_by_appointment",
    "fetch_communications",
    "is_patient_facing",
    "is_received_by",
    "merge_unique",
    "message_text",
    "message_title",
    "recipient_references",
    "sort_newest_first",
    "to_bundle",
    "unread_count",
]
