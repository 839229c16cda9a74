from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests
import structlog

from healermy.communications import (
    DEFAULT_PAGE_SIZE,
    MESSAGE_TITLES,
    MessageKind,
    appointment_id,
    classify_message,
    dedupe_by_appointment,
    is_patient_facing,
    message_text,
    sort_newest_first,
)
from healermy.fhir_client import bundle_resources, is_deleted_by_provider
from healermy.read_state import ReadStateReconciler, ReadStateStore
from healermy.session import PATIENT_ROLE, PROVIDER_ROLES


logger = structlog.get_logger(__name__)


class PortalAPIError(Exception):
    """Raised when a portal API call returns an error status."""

    def __init__(self, status_code: Optional[int], detail: str) -> None:
        super().__init__(f"Portal API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class PortalClient:
    """HTTP client for the portal's own session and communications API.

    The client carries the session cookie in its ``requests.Session`` the
    same way a browser would.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http: Optional[requests.Session] = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http or requests.Session()
        self._timeout = timeout

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise PortalAPIError(None, str(exc)) from exc
        if not resp.ok:
            raise PortalAPIError(resp.status_code, resp.text)
        return resp

    def session_status(self) -> Dict[str, Any]:
        """Return the session-status body; a 401 is a normal answer here."""

        try:
            return self._request("GET", "/api/auth/session").json()
        except PortalAPIError as exc:
            if exc.status_code == 401:
                return {"authenticated": False}
            raise

    def list_communications(
        self, *, count: int = DEFAULT_PAGE_SIZE, about: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"_count": count}
        if about:
            params["about"] = about
        bundle = self._request("GET", "/api/fhir/communications", params=params).json()
        return bundle_resources(bundle)

    def mark_read(self, communication_id: str) -> Dict[str, Any]:
        return self._request(
            "PATCH",
            f"/api/fhir/communications/{communication_id}",
            json={"action": "mark-read"},
        ).json()

    def delete(self, communication_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/fhir/communications/{communication_id}").json()


@dataclass
class NotificationItem:
    """One rendered notification card."""

    id: str
    title: str
    message: str
    kind: MessageKind
    sent: Optional[str]
    appointment_id: Optional[str]
    is_read: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "kind": self.kind.value,
            "sent": self.sent,
            "appointmentId": self.appointment_id,
            "isRead": self.is_read,
        }


@dataclass
class BatchResult:
    """Outcome of a multi-message operation; failures are not rolled back."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


class NotificationFeed:
    """Poll messages for one viewer and apply local read/delete state."""

    def __init__(
        self,
        client: PortalClient,
        reconciler: ReadStateReconciler,
        *,
        viewer_ref: str,
        role: str,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._reconciler = reconciler
        self._reconciler.viewer_ref = viewer_ref
        self.viewer_ref = viewer_ref
        self.role = role
        self._page_size = page_size
        self._messages: List[Dict[str, Any]] = []

    @classmethod
    def connect(
        cls,
        client: PortalClient,
        store: ReadStateStore,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "NotificationFeed":
        """Build a feed for whoever the client's session cookie belongs to."""

        status = client.session_status()
        if not status.get("authenticated"):
            raise PortalAPIError(401, "Session is not authenticated")
        session = status.get("session") or {}
        role = session.get("role") or PATIENT_ROLE
        # The server resolves the viewer; older servers omit userReference.
        viewer_ref = session.get("userReference")
        if not viewer_ref and role == PATIENT_ROLE:
            viewer_ref = f"Patient/{session.get('patient')}"
        elif not viewer_ref:
            viewer_ref = f"Practitioner/{session.get('practitioner') or session.get('patient')}"
        reconciler = ReadStateReconciler(store, sender=client.mark_read)
        return cls(client, reconciler, viewer_ref=viewer_ref, role=role, page_size=page_size)

    @property
    def is_provider(self) -> bool:
        return self.role in PROVIDER_ROLES

    def _visible(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        store = self._reconciler.store
        visible = []
        for comm in messages:
            comm_id = str(comm.get("id"))
            if store.is_hidden(comm_id):
                continue
            if self.is_provider:
                if is_deleted_by_provider(comm) or is_patient_facing(comm):
                    continue
            visible.append(comm)
        return visible

    def refresh(self) -> List[NotificationItem]:
        """Fetch from the server, reconcile and return the cards to show."""

        try:
            messages = self._client.list_communications(count=self._page_size)
        except PortalAPIError as exc:
            logger.warning("notification_refresh_failed", status_code=exc.status_code)
            raise
        self._reconciler.reconcile(messages)
        self._messages = dedupe_by_appointment(sort_newest_first(self._visible(messages)))
        return self.items()

    def items(self) -> List[NotificationItem]:
        return [self._to_item(comm) for comm in self._visible(self._messages)]

    def _to_item(self, comm: Mapping[str, Any]) -> NotificationItem:
        kind = classify_message(comm)
        return NotificationItem(
            id=str(comm.get("id")),
            title=MESSAGE_TITLES[kind],
            message=message_text(comm),
            kind=kind,
            sent=comm.get("sent"),
            appointment_id=appointment_id(comm),
            is_read=self._reconciler.is_read(comm),
        )

    def unread_count(self) -> int:
        return sum(1 for item in self.items() if not item.is_read)

    def mark_read(self, communication_id: str) -> bool:
        return self._reconciler.mark_read(communication_id)

    def mark_all_read(self) -> BatchResult:
        """Issue one independent mark-read per unread card."""

        result = BatchResult()
        for item in self.items():
            if item.is_read:
                continue
            if self._reconciler.mark_read(item.id):
                result.succeeded.append(item.id)
            else:
                result.failed.append(item.id)
        if result.failed:
            logger.warning(
                "mark_all_read_partial_failure",
                succeeded=len(result.succeeded),
                failed=len(result.failed),
            )
        return result

    def delete(self, communication_id: str) -> bool:
        """Delete a message for this viewer.

        Providers hide the card locally right away and soft delete on the
        server; patients remove it only after the server confirms.
        """

        if self.is_provider:
            self._reconciler.hide(communication_id)
        try:
            self._client.delete(communication_id)
        except PortalAPIError as exc:
            logger.warning(
                "notification_delete_failed",
                communication_id=communication_id,
                status_code=exc.status_code,
            )
            return False
        self._messages = [comm for comm in self._messages if str(comm.get("id")) != communication_id]
        return True


__all__ = [
    "BatchResult",
    "NotificationFeed",
    "NotificationItem",
    "PortalAPIError",
    "PortalClient",
]
