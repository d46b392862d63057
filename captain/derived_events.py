from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable

from captain.identity import fresh_id, normalize_id
from captain.log import get_logger
from captain.models import EVENT_SOURCE_DERIVED, CalendarEvent, Opportunity, parse_date

log = get_logger(__name__)


@dataclass(frozen=True)
class EventTemplate:
    offset_days: int
    event_type: str
    title: str


_INTERVIEW = EventTemplate(5, "interview", "{status} with {company}")
_FOLLOW_UP = EventTemplate(7, "followup", "Follow up with {company}")

STATUS_TEMPLATES: dict[str, EventTemplate] = {
    "Technical Assessment": EventTemplate(3, "assessment", "Technical Assessment for {company}"),
    "First Interview": _INTERVIEW,
    "Second Interview": _INTERVIEW,
    "Final Interview": _INTERVIEW,
    "Applied": _FOLLOW_UP,
    "Following Up": _FOLLOW_UP,
    "Offer Received": EventTemplate(7, "deadline", "Deadline to respond to {company} offer"),
}


def derived_event_id(opportunity_id: str, event_type: str) -> str:
    return f"{opportunity_id}:{event_type}"


def reference_date(opportunity: Opportunity, today: date | None = None) -> date:
    parsed = parse_date(opportunity.reference_date)
    if parsed is not None:
        return parsed
    fallback = today or date.today()
    if opportunity.reference_date:
        log.warning(
            "Unparseable reference date %r on opportunity %s, using %s",
            opportunity.reference_date,
            opportunity.id,
            fallback.isoformat(),
        )
    return fallback


def derive_events(
    opportunity: Opportunity,
    today: date | None = None,
    taken: Iterable[Any] = (),
) -> list[CalendarEvent]:
    """Calendar reminders implied by the opportunity's current status.

    Offsets are counted from the reference date. Statuses without a template
    produce nothing. ``today`` is only consulted when the reference date is
    missing or cannot be parsed. When the usual id is already in ``taken`` the
    event gets a fresh one instead.
    """
    template = STATUS_TEMPLATES.get(opportunity.status)
    if template is None:
        return []
    anchor = reference_date(opportunity, today=today)
    event_id = derived_event_id(opportunity.id, template.event_type)
    taken_ids = {normalize_id(item) for item in taken}
    if event_id in taken_ids:
        replacement = fresh_id(taken_ids)
        log.warning("Event id %s already in use, derived event gets %s", event_id, replacement)
        event_id = replacement
    return [
        CalendarEvent(
            id=event_id,
            title=template.title.format(status=opportunity.status, company=opportunity.company),
            date=anchor + timedelta(days=template.offset_days),
            type=template.event_type,
            opportunity_id=opportunity.id,
            source=EVENT_SOURCE_DERIVED,
        )
    ]
