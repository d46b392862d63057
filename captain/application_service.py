from __future__ import annotations

from typing import Any

import requests

from captain.identity import normalize_id
from captain.log import get_logger
from captain.models import CalendarEvent, Opportunity, RemoteStoreConfig, serialize_date, utc_now

log = get_logger(__name__)


class RemoteStoreError(RuntimeError):
    pass


def to_job_application(opportunity: Opportunity) -> dict[str, Any]:
    """Remote row shape for an opportunity."""
    return {
        "id": opportunity.id,
        "companyName": opportunity.company,
        "positionTitle": opportunity.position,
        "status": opportunity.status,
        "dateAdded": utc_now().isoformat(),
        "dateApplied": opportunity.reference_date,
        "jobDescription": opportunity.job_description,
        "notes": opportunity.notes or opportunity.resume,
        "location": opportunity.location,
        "salary": opportunity.salary,
        "contactName": opportunity.recruiter_name,
        "contactEmail": opportunity.recruiter_email,
        "contactPhone": opportunity.recruiter_phone,
        "url": opportunity.application_url,
        "tags": opportunity.tags,
    }


def opportunity_from_application(row: dict[str, Any]) -> Opportunity:
    date_added = str(row.get("dateAdded") or "")
    return Opportunity.from_dict(
        {
            "id": row.get("id"),
            "company": row.get("companyName"),
            "position": row.get("positionTitle"),
            "status": row.get("status"),
            "reference_date": row.get("dateApplied") or date_added.split("T")[0],
            "job_description": row.get("jobDescription"),
            "resume": row.get("notes"),
            "notes": row.get("notes"),
            "location": row.get("location"),
            "application_url": row.get("url"),
            "salary": row.get("salary"),
            "recruiter_name": row.get("contactName"),
            "recruiter_email": row.get("contactEmail"),
            "recruiter_phone": row.get("contactPhone"),
            "tags": row.get("tags") or [],
        }
    )


def to_event_row(event: CalendarEvent) -> dict[str, Any]:
    """Remote ``events`` row for a user-authored event."""
    return {
        "id": event.id,
        "application_id": event.opportunity_id,
        "title": event.title,
        "date": serialize_date(event.date),
        "type": event.type,
        "notes": event.notes or event.description,
        "location": event.location,
        "is_completed": False,
    }


def event_from_row(row: dict[str, Any], application_id: Any = None) -> CalendarEvent:
    return CalendarEvent.from_dict(
        {
            "id": row.get("id"),
            "title": row.get("title"),
            "date": row.get("date"),
            "type": row.get("type") or "general",
            "opportunity_id": row.get("application_id", application_id),
            "notes": row.get("notes"),
            "location": row.get("location"),
            "source": row.get("source"),
        }
    )


def events_from_application(row: dict[str, Any]) -> list[CalendarEvent]:
    return [event_from_row(item, row.get("id")) for item in row.get("events") or [] if isinstance(item, dict)]


class RemoteApplicationService:
    """PostgREST-style client for the ``applications`` and ``events`` tables."""

    def __init__(self, config: RemoteStoreConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key)

    def _endpoint(self, table: str | None = None) -> str:
        return f"{self.config.base_url.rstrip('/')}/{table or self.config.table}"

    def _headers(self, prefer: str = "") -> dict[str, str]:
        headers = {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, *, table: str | None = None, missing_ok: bool = False, **kwargs: Any) -> Any:
        if not self.is_configured():
            raise RemoteStoreError("Remote store config incomplete: base_url/api_key required.")
        try:
            response = requests.request(
                method,
                self._endpoint(table),
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = getattr(exc.response, "status_code", None)
            if missing_ok and status == 404:
                log.warning("Remote table %s not found, skipping %s", table or self.config.table, method)
                return None
            log.error("Remote store %s failed: %s", method, exc)
            raise RemoteStoreError(f"{type(exc).__name__}: {exc}") from exc
        except requests.RequestException as exc:
            log.error("Remote store %s failed: %s", method, exc)
            raise RemoteStoreError(f"{type(exc).__name__}: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteStoreError("Remote store returned invalid JSON.") from exc

    def list_applications(self) -> tuple[list[Opportunity], list[CalendarEvent]]:
        rows = self._request("GET", headers=self._headers(), params={"select": "*"})
        if not isinstance(rows, list):
            raise RemoteStoreError("Remote store returned an unexpected payload.")
        opportunities: list[Opportunity] = []
        events: list[CalendarEvent] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            opportunities.append(opportunity_from_application(row))
            events.extend(events_from_application(row))
        seen = {event.id for event in events}
        for item in self.list_events():
            if item.id not in seen:
                events.append(item)
                seen.add(item.id)
        log.info("Loaded %d applications and %d events from remote store", len(opportunities), len(events))
        return opportunities, events

    def list_events(self) -> list[CalendarEvent]:
        # A store without an events table still serves applications.
        rows = self._request(
            "GET",
            table=self.config.events_table,
            missing_ok=True,
            headers=self._headers(),
            params={"select": "*"},
        )
        if not isinstance(rows, list):
            return []
        return [event_from_row(row) for row in rows if isinstance(row, dict)]

    def save_application(self, opportunity: Opportunity) -> str:
        """Upsert an opportunity and return the id the remote store assigned."""
        rows = self._request(
            "POST",
            headers=self._headers("resolution=merge-duplicates,return=representation"),
            json=to_job_application(opportunity),
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            remote_id = normalize_id(rows[0].get("id"))
            if remote_id:
                return remote_id
        return opportunity.id

    def update_status(self, opportunity_id: str, status: str) -> None:
        self._request(
            "PATCH",
            headers=self._headers("return=minimal"),
            params={"id": f"eq.{normalize_id(opportunity_id)}"},
            json={"status": status},
        )

    def delete_application(self, opportunity_id: str) -> None:
        self._request(
            "DELETE",
            headers=self._headers("return=minimal"),
            params={"id": f"eq.{normalize_id(opportunity_id)}"},
        )

    def save_event(self, event: CalendarEvent) -> None:
        if event.opportunity_id is None:
            raise RemoteStoreError(f"Event {event.id} has no application to attach to.")
        self._request(
            "POST",
            table=self.config.events_table,
            headers=self._headers("resolution=merge-duplicates,return=minimal"),
            json=to_event_row(event),
        )

    def delete_event(self, event_id: str) -> None:
        self._request(
            "DELETE",
            table=self.config.events_table,
            headers=self._headers("return=minimal"),
            params={"id": f"eq.{normalize_id(event_id)}"},
        )
