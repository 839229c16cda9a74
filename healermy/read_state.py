"""Local read-state overlay and its reconciliation with server state.

The FHIR store is authoritative for whether a message has been read, but a
mark-read round trip is slow and a background poll can briefly report a
message as unread after the user opened it.  :class:`ReadStateStore` keeps a
small overlay of ids the user has read locally, and
:class:`ReadStateReconciler` consults it before the last server state.

Per message the states are::

    unread -> pending_read -> read
    (any)  -> deleted

Overlay entries are dropped once the server confirms the read, immediately
when the PATCH failed and the server still says unread, or after
``max_unconfirmed_polls`` polls without confirmation.  The overlay therefore
never grows without bound and never masks server state indefinitely.
"""

from __future__ import annotations

import json
import os
from collections.abc import MutableMapping
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Set, Union

import structlog

from healermy.communications import is_received_by
from healermy.fhir_client import is_communication_read

logger = structlog.get_logger(__name__)

READ_STORAGE_KEY = "healermy-provider-read-notifications"
HIDDEN_STORAGE_KEY = "healermy-provider-hidden-notifications"

MessageRef = Union[str, Mapping[str, Any]]


class MessageState(str, Enum):
    UNREAD = "unread"
    PENDING_READ = "pending_read"
    READ = "read"
    DELETED = "deleted"


class JSONFileStorage(MutableMapping):
    """String key/value storage persisted to a JSON file."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._path = Path(path)
        self._data: Dict[str, str] = {}
        if self._path.exists():
            try:
                loaded = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("read_state_storage_unreadable", path=str(self._path))
                loaded = {}
            if isinstance(loaded, dict):
                self._data = {str(k): str(v) for k, v in loaded.items()}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data), encoding="utf-8")
        os.replace(tmp, self._path)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._flush()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


class ReadStateStore:
    """Read and hidden message ids, mirrored into a key/value storage."""

    def __init__(self, storage: Optional[MutableMapping] = None) -> None:
        self._storage = storage if storage is not None else {}
        self._lock = Lock()
        self._read = self._load(READ_STORAGE_KEY)
        self._hidden = self._load(HIDDEN_STORAGE_KEY)

    def _load(self, key: str) -> Set[str]:
        raw = self._storage.get(key)
        if not raw:
            return set()
        try:
            values = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("read_state_corrupt", key=key)
            return set()
        if not isinstance(values, list):
            logger.warning("read_state_corrupt", key=key)
            return set()
        return {str(value) for value in values if isinstance(value, (str, int))}

    def _persist(self, key: str, values: Set[str]) -> None:
        self._storage[key] = json.dumps(sorted(values))

    def read_ids(self) -> frozenset:
        with self._lock:
            return frozenset(self._read)

    def hidden_ids(self) -> frozenset:
        with self._lock:
            return frozenset(self._hidden)

    def is_locally_read(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._read

    def is_hidden(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._hidden

    def add_read(self, message_id: str) -> bool:
        """Add *message_id* to the overlay; ``False`` if it was already there."""

        with self._lock:
            if message_id in self._read:
                return False
            self._read.add(message_id)
            self._persist(READ_STORAGE_KEY, self._read)
            return True

    def discard_read(self, message_ids: Iterable[str]) -> None:
        with self._lock:
            before = len(self._read)
            self._read.difference_update(message_ids)
            if len(self._read) != before:
                self._persist(READ_STORAGE_KEY, self._read)

    def add_hidden(self, message_id: str) -> None:
        with self._lock:
            if message_id in self._hidden:
                return
            self._hidden.add(message_id)
            self._persist(HIDDEN_STORAGE_KEY, self._hidden)


def _message_id(message: MessageRef) -> Optional[str]:
    if isinstance(message, str):
        return message
    value = message.get("id")
    return str(value) if value is not None else None


class ReadStateReconciler:
    """Decide read status from the local overlay and the last server poll."""

    def __init__(
        self,
        store: ReadStateStore,
        sender: Optional[Callable[[str], Any]] = None,
        *,
        viewer_ref: Optional[str] = None,
        max_unconfirmed_polls: int = 3,
    ) -> None:
        self.store = store
        self._sender = sender
        self.viewer_ref = viewer_ref
        self._max_unconfirmed = max(1, max_unconfirmed_polls)
        self._lock = Lock()
        self._server_read: Dict[str, bool] = {}
        self._pending: Set[str] = set()
        self._failed: Set[str] = set()
        self._unconfirmed_polls: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_read(self, message: MessageRef, viewer_ref: Optional[str] = None) -> bool:
        message_id = _message_id(message)
        viewer = viewer_ref or self.viewer_ref
        if viewer and not isinstance(message, str) and not is_received_by(message, viewer):
            return True
        if message_id is not None and self.store.is_locally_read(message_id):
            return True
        if not isinstance(message, str):
            return is_communication_read(message)
        with self._lock:
            return self._server_read.get(message_id, False)

    def state(self, message_id: str) -> MessageState:
        if self.store.is_hidden(message_id):
            return MessageState.DELETED
        with self._lock:
            if self._server_read.get(message_id):
                return MessageState.READ
        if self.store.is_locally_read(message_id):
            return MessageState.PENDING_READ
        return MessageState.UNREAD

    def is_pending(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._pending

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def mark_read(self, message_id: str) -> bool:
        """Optimistically mark *message_id* read and notify the server.

        Returns ``False`` only when the server call failed.  Repeated calls
        are no-ops until a failure is recorded.
        """

        with self._lock:
            if self._server_read.get(message_id) or message_id in self._pending:
                return True
            retry = message_id in self._failed
            if not retry and self.store.is_locally_read(message_id):
                return True
            self._failed.discard(message_id)
            self._pending.add(message_id)
            self._unconfirmed_polls.pop(message_id, None)
        self.store.add_read(message_id)

        if self._sender is None:
            with self._lock:
                self._pending.discard(message_id)
            return True
        try:
            self._sender(message_id)
        except Exception:
            logger.exception("mark_read_failed", message_id=message_id)
            with self._lock:
                self._pending.discard(message_id)
                self._failed.add(message_id)
            return False
        with self._lock:
            self._pending.discard(message_id)
        return True

    def hide(self, message_id: str) -> None:
        """Record a provider-scoped local delete."""

        self.store.add_hidden(message_id)

    def reconcile(self, server_messages: Iterable[Mapping[str, Any]]) -> Set[str]:
        """Merge a fresh server poll; return the overlay ids that were cleared."""

        cleared: Set[str] = set()
        overlay = self.store.read_ids()
        with self._lock:
            for comm in server_messages:
                message_id = _message_id(comm)
                if message_id is None:
                    continue
                confirmed = is_communication_read(comm)
                self._server_read[message_id] = confirmed
                if message_id not in overlay:
                    continue
                if confirmed:
                    cleared.add(message_id)
                elif message_id in self._pending:
                    continue
                elif message_id in self._failed:
                    cleared.add(message_id)
                else:
                    polls = self._unconfirmed_polls.get(message_id, 0) + 1
                    if polls >= self._max_unconfirmed:
                        cleared.add(message_id)
                    else:
                        self._unconfirmed_polls[message_id] = polls
            for message_id in cleared:
                self._failed.discard(message_id)
                self._unconfirmed_polls.pop(message_id, None)
        if cleared:
            self.store.discard_read(cleared)
            logger.debug("read_state_reconciled", cleared=len(cleared))
        return cleared


__all__ = [
    "HIDDEN_STORAGE_KEY",
    "JSONFileStorage",
    "MessageState",
    "READ_STORAGE_KEY",
    "ReadStateReconciler",
    "ReadStateStore",
]
