from urllib.parse import parse_qs, urlparse

from conftest import FHIR_BASE, bundle_of, make_communication, make_session_payload
from healermy.communications import (
    MessageKind,
    classify_message,
    dedupe_by_appointment,
    fetch_communications,
    is_patient_facing,
    merge_unique,
    message_title,
    sort_newest_first,
    to_bundle,
    unread_count,
)
from healermy.fhir_client import DELETED_BY_PROVIDER_URL, FHIRClient, is_communication_read
from healermy.session import SessionData

COMM_URL = f"{FHIR_BASE}/Communication"
DELETED = [{"url": DELETED_BY_PROVIDER_URL, "valueBoolean": True}]


def _about(appointment):
    return [{"reference": f"Appointment/{appointment}"}]


def test_dedupe_keeps_latest_message_per_appointment():
    a = make_communication("1", about=_about("9"), sent="2024-05-01T10:00:00Z")
    b = make_communication("2", about=_about("9"), sent="2024-05-01T10:05:00Z")
    assert [comm["id"] for comm in dedupe_by_appointment([a, b])] == ["2"]
    assert [comm["id"] for comm in dedupe_by_appointment([b, a])] == ["2"]


def test_dedupe_tie_keeps_first_and_passes_unlinked_messages():
    a = make_communication("1", about=_about("9"), sent="2024-05-01T10:00:00Z")
    b = make_communication("2", about=_about("9"), sent="2024-05-01T10:00:00Z")
    loose = make_communication("3", sent="2024-05-01T09:00:00Z")
    other = make_communication("4", about=_about("7"), sent="2024-05-01T08:00:00Z")
    result = dedupe_by_appointment([a, loose, b, other])
    assert [comm["id"] for comm in result] == ["1", "3", "4"]


def test_sort_newest_first_puts_missing_sent_last():
    old = make_communication("old", sent="2023-01-01T00:00:00Z")
    new = make_communication("new", sent="2024-01-01T00:00:00+00:00")
    undated = make_communication("undated")
    assert [comm["id"] for comm in sort_newest_first([undated, old, new])] == ["new", "old", "undated"]


def test_merge_unique_drops_duplicate_ids():
    a = make_communication("1", sent="2024-01-01T00:00:00Z")
    b = make_communication("2", sent="2024-01-02T00:00:00Z")
    merged = merge_unique([a, b], [dict(a, status="stale")])
    assert [comm["id"] for comm in merged] == ["2", "1"]
    assert merged[1]["status"] == "completed"


def test_classify_prefers_topic_over_text():
    comm = make_communication(
        "1",
        topic={"coding": [{"code": "cancelled"}]},
        text="Your appointment has been confirmed",
    )
    assert classify_message(comm) is MessageKind.CANCELLED


def test_classify_uses_category_then_text():
    manual = make_communication("1", category=[{"text": "manual-message"}], text="Reminder: fast")
    assert classify_message(manual) is MessageKind.MANUAL_MESSAGE

    status = make_communication(
        "2",
        category=[{"coding": [{"code": "notification"}], "text": "Appointment Status Update"}],
        text="Your appointment was rescheduled",
    )
    assert classify_message(status) is MessageKind.RESCHEDULED

    plain_status = make_communication("3", category=[{"coding": [{"code": "notification"}]}], text="Update")
    assert classify_message(plain_status) is MessageKind.APPOINTMENT_UPDATE

    results = make_communication("4", text="Your lab results are ready")
    assert classify_message(results) is MessageKind.TEST_RESULTS
    assert message_title(results) == "Test Results Available"
    assert classify_message(make_communication("5", text="Hi")) is MessageKind.GENERAL


def test_patient_facing_uses_recipients_before_text():
    to_patient = make_communication("1", recipient=[{"reference": "Patient/p1"}], text="Note")
    to_provider = make_communication(
        "2", recipient=[{"reference": "Practitioner/dr1"}], text="Your appointment has been booked"
    )
    unaddressed = make_communication("3", text="Thank you for booking")
    assert is_patient_facing(to_patient)
    assert not is_patient_facing(to_provider)
    assert is_patient_facing(unaddressed)


def test_provider_fetch_hides_soft_deleted_messages(requests_mock):
    visible = make_communication("1", sent="2024-01-01T00:00:00Z")
    deleted = make_communication("2", sent="2024-01-02T00:00:00Z", extension=DELETED)
    m = requests_mock.get(COMM_URL, json=bundle_of(visible, deleted))
    session = SessionData.model_validate(make_session_payload("provider"))
    result = fetch_communications(FHIRClient(FHIR_BASE, "t"), session, about="9")
    assert [comm["id"] for comm in result] == ["1"]
    query = parse_qs(urlparse(m.last_request.url).query)
    assert "recipient" not in query
    assert query["about"] == ["Appointment/9"]


def test_provider_delete_does_not_hide_message_from_patient(requests_mock):
    deleted = make_communication(
        "2", recipient=[{"reference": "Patient/p1"}], extension=DELETED
    )
    m = requests_mock.get(COMM_URL, json=bundle_of(deleted))
    session = SessionData.model_validate(make_session_payload("patient"))
    result = fetch_communications(FHIRClient(FHIR_BASE, "t"), session)
    assert [comm["id"] for comm in result] == ["2"]
    assert parse_qs(urlparse(m.last_request.url).query)["recipient"] == ["Patient/p1"]


def test_patient_fetch_with_sent_messages_merges_both_searches(requests_mock):
    received = make_communication("1", sent="2024-01-01T00:00:00Z")
    sent = make_communication("2", sent="2024-01-03T00:00:00Z")
    requests_mock.get(
        COMM_URL,
        [{"json": bundle_of(received)}, {"json": bundle_of(sent, received)}],
    )
    session = SessionData.model_validate(make_session_payload("patient"))
    result = fetch_communications(FHIRClient(FHIR_BASE, "t"), session, include_sent=True)
    assert [comm["id"] for comm in result] == ["2", "1"]
    assert requests_mock.call_count == 2


def test_unread_count_and_bundle():
    messages = [make_communication("1"), make_communication("2")]
    assert unread_count(messages, None, is_communication_read) == 2
    assert unread_count(messages, None, lambda comm: comm["id"] == "1") == 1
    addressed = [make_communication("3", recipient=[{"reference": "Patient/p1"}])] + messages
    assert unread_count(addressed, "Patient/p1", is_communication_read) == 1
    bundle = to_bundle(messages)
    assert bundle["total"] == 2
    assert bundle["entry"][0]["resource"]["id"] == "1"
