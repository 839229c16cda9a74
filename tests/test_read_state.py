import json

import pytest

from conftest import make_communication
from healermy.fhir_client import READ_STATUS_URL
from healermy.read_state import (
    HIDDEN_STORAGE_KEY,
    READ_STORAGE_KEY,
    JSONFileStorage,
    MessageState,
    ReadStateReconciler,
    ReadStateStore,
)

READ_EXT = [{"url": READ_STATUS_URL, "valueDateTime": "2024-01-01T00:00:00Z"}]


def _unread(comm_id):
    return make_communication(comm_id, recipient=[{"reference": "Patient/p1"}])


def _read(comm_id):
    return make_communication(comm_id, recipient=[{"reference": "Patient/p1"}], extension=READ_EXT)


def test_store_persists_sorted_json_arrays():
    storage = {}
    store = ReadStateStore(storage)
    assert store.add_read("b")
    assert store.add_read("a")
    assert not store.add_read("a")
    store.add_hidden("z")
    assert json.loads(storage[READ_STORAGE_KEY]) == ["a", "b"]
    assert json.loads(storage[HIDDEN_STORAGE_KEY]) == ["z"]

    reloaded = ReadStateStore(storage)
    assert reloaded.read_ids() == frozenset({"a", "b"})
    assert reloaded.is_hidden("z")


@pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', "42"])
def test_store_ignores_corrupt_storage(raw):
    store = ReadStateStore({READ_STORAGE_KEY: raw})
    assert store.read_ids() == frozenset()


def test_json_file_storage_survives_restart(tmp_path):
    path = tmp_path / "state" / "notifications.json"
    store = ReadStateStore(JSONFileStorage(path))
    store.add_read("c1")
    store.add_hidden("c2")

    reopened = ReadStateStore(JSONFileStorage(path))
    assert reopened.is_locally_read("c1")
    assert reopened.is_hidden("c2")


def test_mark_read_is_visible_before_next_poll():
    sent = []
    reconciler = ReadStateReconciler(ReadStateStore(), viewer_ref="Patient/p1")

    def send(message_id):
        assert reconciler.is_pending(message_id)
        sent.append(message_id)

    reconciler._sender = send
    comm = _unread("c1")
    assert not reconciler.is_read(comm)

    assert reconciler.mark_read("c1")
    assert not reconciler.is_pending("c1")
    assert reconciler.is_read(comm)
    assert reconciler.state("c1") is MessageState.PENDING_READ
    assert sent == ["c1"]

    assert reconciler.mark_read("c1")
    assert sent == ["c1"]


def test_server_confirmation_clears_overlay():
    store = ReadStateStore()
    reconciler = ReadStateReconciler(store, sender=lambda _id: None)
    reconciler.mark_read("c1")
    cleared = reconciler.reconcile([_read("c1")])
    assert cleared == {"c1"}
    assert not store.is_locally_read("c1")
    assert reconciler.is_read("c1")
    assert reconciler.state("c1") is MessageState.READ


def test_stale_poll_does_not_revert_optimistic_read():
    store = ReadStateStore()
    reconciler = ReadStateReconciler(store, sender=lambda _id: None, max_unconfirmed_polls=3)
    reconciler.mark_read("c1")

    assert reconciler.reconcile([_unread("c1")]) == set()
    assert reconciler.is_read(_unread("c1"))
    assert reconciler.reconcile([_unread("c1")]) == set()
    assert reconciler.reconcile([_unread("c1")]) == {"c1"}
    assert not reconciler.is_read(_unread("c1"))


def test_failed_mark_read_converges_to_server_state():
    def failing(_id):
        raise RuntimeError("network down")

    store = ReadStateStore()
    reconciler = ReadStateReconciler(store, sender=failing)
    assert not reconciler.mark_read("c1")
    assert reconciler.is_read("c1")

    assert reconciler.reconcile([_unread("c1")]) == {"c1"}
    assert not reconciler.is_read(_unread("c1"))
    assert reconciler.state("c1") is MessageState.UNREAD


def test_failed_mark_read_can_be_retried():
    calls = []

    def flaky(message_id):
        calls.append(message_id)
        if len(calls) == 1:
            raise RuntimeError("timeout")

    reconciler = ReadStateReconciler(ReadStateStore(), sender=flaky)
    assert not reconciler.mark_read("c1")
    assert reconciler.mark_read("c1")
    assert calls == ["c1", "c1"]


def test_messages_not_addressed_to_viewer_count_as_read():
    reconciler = ReadStateReconciler(ReadStateStore(), viewer_ref="Practitioner/dr1")
    outgoing = _unread("c1")
    incoming = make_communication("c2", recipient=[{"reference": "Practitioner/dr1"}])
    assert reconciler.is_read(outgoing)
    assert not reconciler.is_read(incoming)


def test_hide_marks_deleted():
    store = ReadStateStore()
    reconciler = ReadStateReconciler(store)
    reconciler.hide("c1")
    assert store.is_hidden("c1")
    assert reconciler.state("c1") is MessageState.DELETED
