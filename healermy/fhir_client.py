"""Minimal FHIR client for Communication resources.

:class:`FHIRClient` wraps authenticated requests against the clinical data
store configured for the signed-in user.  Read status and provider soft
deletion are both stored as extensions on the Communication itself so that
the server remains the single source of truth.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

import requests
import structlog

from healermy.security import COMMUNICATION_MUTATIONS_TOTAL, FHIR_FAILURES_TOTAL
from healermy.time_utils import isoformat_z

logger = structlog.get_logger(__name__)

FHIR_JSON = "application/fhir+json"

READ_STATUS_URL = "http://hl7.org/fhir/StructureDefinition/communication-read-status"
DELETED_BY_PROVIDER_URL = "http://hl7.org/fhir/StructureDefinition/communication-deleted-by-provider"
CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/communication-category"

SEARCH_PARAMS = (
    "recipient",
    "sender",
    "about",
    "subject",
    "category",
    "status",
    "sent",
    "_count",
    "_sort",
)


class FHIRError(Exception):
    """Raised when the FHIR server rejects a request or cannot be reached."""

    def __init__(self, status_code: Optional[int], detail: str, url: str = "") -> None:
        super().__init__(f"FHIR API error: {status_code or 'unreachable'} {detail}".strip())
        self.status_code = status_code
        self.detail = detail
        self.url = url

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


def _find_extension(resource: Mapping[str, Any], url: str) -> Optional[Mapping[str, Any]]:
    for ext in resource.get("extension") or []:
        if isinstance(ext, Mapping) and ext.get("url") == url:
            return ext
    return None


def is_communication_read(communication: Mapping[str, Any]) -> bool:
    """Return ``True`` when the server-side read extension is present."""

    ext = _find_extension(communication, READ_STATUS_URL)
    return bool(ext and ext.get("valueDateTime"))


def is_deleted_by_provider(communication: Mapping[str, Any]) -> bool:
    ext = _find_extension(communication, DELETED_BY_PROVIDER_URL)
    return bool(ext and ext.get("valueBoolean"))


def bundle_resources(bundle: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return the resources contained in a searchset bundle."""

    resources = []
    for entry in bundle.get("entry") or []:
        resource = entry.get("resource") if isinstance(entry, Mapping) else None
        if isinstance(resource, dict):
            resources.append(resource)
    return resources


class FHIRClient:
    """Authenticated access to a single FHIR base URL."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token.strip()
        self._timeout = timeout
        self._http = http or requests.Session()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def fetch_with_auth(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Mapping[str, Any]] = None,
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": FHIR_JSON,
        }
        if json is not None:
            headers["Content-Type"] = FHIR_JSON
        try:
            resp = self._http.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            FHIR_FAILURES_TOTAL.labels(status="unreachable").inc()
            logger.error("fhir_request_failed", method=method, url=url, error=str(exc))
            raise FHIRError(None, str(exc), url) from exc
        if not resp.ok:
            detail = f"{resp.status_code} {resp.reason or ''}".strip()
            if resp.text:
                detail = f"{detail}\nResponse body: {resp.text}"
            FHIR_FAILURES_TOTAL.labels(status=str(resp.status_code)).inc()
            logger.error(
                "fhir_api_error",
                method=method,
                url=url,
                status_code=resp.status_code,
            )
            raise FHIRError(resp.status_code, detail, url)
        return resp

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, *parts])

    # ------------------------------------------------------------------
    # Communication CRUD
    # ------------------------------------------------------------------
    def search_communications(self, **options: Any) -> Dict[str, Any]:
        """Search Communications; unknown or ``None`` options are ignored."""

        params = {
            key: str(value)
            for key, value in options.items()
            if key in SEARCH_PARAMS and value is not None
        }
        resp = self.fetch_with_auth("GET", self._url("Communication"), params=params or None)
        return resp.json()

    def get_communication(self, communication_id: str) -> Dict[str, Any]:
        return self.fetch_with_auth("GET", self._url("Communication", communication_id)).json()

    def create_communication(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        resp = self.fetch_with_auth("POST", self._url("Communication"), json=dict(data))
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="create", outcome="ok").inc()
        return resp.json()

    def update_communication(self, communication_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        resp = self.fetch_with_auth(
            "PUT", self._url("Communication", communication_id), json=dict(data)
        )
        return resp.json()

    def delete_communication(self, communication_id: str) -> Dict[str, Any]:
        resp = self.fetch_with_auth("DELETE", self._url("Communication", communication_id))
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="delete", outcome="ok").inc()
        if resp.status_code == 204 or not resp.content:
            return {"success": True}
        return resp.json()

    # ------------------------------------------------------------------
    # Message helpers
    # ------------------------------------------------------------------
    def create_status_update_message(
        self,
        appointment_id: str,
        patient_ref: str,
        practitioner_ref: str,
        status_message: str,
        recipient_role: str = "patient",
    ) -> Dict[str, Any]:
        """Create the automatic notification sent on an appointment status change."""

        if recipient_role == "patient":
            recipient, sender = patient_ref, practitioner_ref
        else:
            recipient, sender = practitioner_ref, patient_ref
        communication = {
            "resourceType": "Communication",
            "status": "completed",
            "category": [
                {
                    "coding": [
                        {
                            "system": CATEGORY_SYSTEM,
                            "code": "notification",
                            "display": "Notification",
                        }
                    ],
                    "text": "Appointment Status Update",
                }
            ],
            "subject": {"reference": patient_ref},
            "about": [{"reference": f"Appointment/{appointment_id}"}],
            "recipient": [{"reference": recipient}],
            "sender": {"reference": sender},
            "sent": isoformat_z(),
            "payload": [{"contentString": status_message}],
        }
        return self.create_communication(communication)

    def create_manual_message(
        self,
        sender_ref: str,
        recipient_ref: str,
        message: str,
        appointment_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        communication: Dict[str, Any] = {
            "resourceType": "Communication",
            "status": "completed",
            "category": [
                {
                    "coding": [
                        {
                            "system": CATEGORY_SYSTEM,
                            "code": "instruction",
                            "display": "Instruction",
                        }
                    ],
                    "text": "Manual Message",
                }
            ],
            "recipient": [{"reference": recipient_ref}],
            "sender": {"reference": sender_ref},
            "sent": isoformat_z(),
            "payload": [{"contentString": message}],
        }
        if subject:
            communication["subject"] = {"reference": subject}
        if appointment_id:
            communication["about"] = [{"reference": f"Appointment/{appointment_id}"}]
        return self.create_communication(communication)

    def create_categorised_message(
        self,
        sender_ref: str,
        recipient_ref: str,
        message: str,
        category: str,
        *,
        subject: str,
        appointment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        communication: Dict[str, Any] = {
            "resourceType": "Communication",
            "status": "completed",
            "category": [{"text": category}],
            "subject": {"reference": subject},
            "recipient": [{"reference": recipient_ref}],
            "sender": {"reference": sender_ref},
            "sent": isoformat_z(),
            "payload": [{"contentString": message}],
        }
        if appointment_id:
            communication["about"] = [{"reference": f"Appointment/{appointment_id}"}]
        return self.create_communication(communication)

    def mark_communication_as_read(self, communication_id: str) -> Dict[str, Any]:
        """Add the read extension unless it is already present."""

        communication = self.get_communication(communication_id)
        if _find_extension(communication, READ_STATUS_URL):
            return communication
        updated = copy.deepcopy(communication)
        updated.setdefault("extension", []).append(
            {"url": READ_STATUS_URL, "valueDateTime": isoformat_z()}
        )
        result = self.update_communication(communication_id, updated)
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="mark-read", outcome="ok").inc()
        return result

    def mark_deleted_by_provider(self, communication_id: str) -> Dict[str, Any]:
        """Hide a message from provider views while keeping it for the patient."""

        communication = self.get_communication(communication_id)
        if is_deleted_by_provider(communication):
            return communication
        updated = copy.deepcopy(communication)
        extensions = [
            ext
            for ext in updated.get("extension") or []
            if not (isinstance(ext, Mapping) and ext.get("url") == DELETED_BY_PROVIDER_URL)
        ]
        extensions.append({"url": DELETED_BY_PROVIDER_URL, "valueBoolean": True})
        updated["extension"] = extensions
        result = self.update_communication(communication_id, updated)
        COMMUNICATION_MUTATIONS_TOTAL.labels(action="mark-deleted-by-provider", outcome="ok").inc()
        return result

    def merge_update(self, communication_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow-merge *changes* into the stored resource and PUT it back."""

        existing = self.get_communication(communication_id)
        merged = {**existing, **dict(changes)}
        return self.update_communication(communication_id, merged)

    def get_unread_communications_count(self, user_ref: Optional[str] = None) -> int:
        """Count unread messages among the 100 most recent.

        Without *user_ref* the count is clinic-wide and skips messages a
        provider soft deleted, matching the provider list.
        """

        bundle = self.search_communications(
            recipient=user_ref,
            status="completed" if user_ref else None,
            _count=100,
            _sort="-sent",
        )
        return sum(
            1
            for comm in bundle_resources(bundle)
            if not is_communication_read(comm) and (user_ref or not is_deleted_by_provider(comm))
        )


__all__ = [
    "CATEGORY_SYSTEM",
    "DELETED_BY_PROVIDER_URL",
    "FHIRClient",
    "FHIRError",
    "READ_STATUS_URL",
    "bundle_resources",
    "is_communication_read",
    "is_deleted_by_provider",
]
