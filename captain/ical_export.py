from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from captain.models import CalendarEvent, utc_now

PRODID = "-//Captain//Job Application Tracker//EN"
UID_DOMAIN = "captain.app"
REMINDER_BEFORE = timedelta(minutes=30)
DEFAULT_DURATION = timedelta(hours=1)


def escape_ical_text(text: str | None) -> str:
    """RFC 5545 TEXT escaping: backslash, semicolon, comma, then newline.

    ``icalendar.vText`` applies this same rule to SUMMARY, DESCRIPTION and
    LOCATION inside ``to_calendar_text``. It is exposed for callers that build
    calendar lines or previews by hand.
    """
    if not text:
        return ""
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def format_ical_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _parse_clock(value: str) -> time | None:
    text = (value or "").strip()
    if not text:
        return None
    for fmt in ("%H:%M", "%H:%M:%S", "%I:%M %p"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


def event_bounds(event: CalendarEvent, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Start and end of an event in UTC.

    Events without a date start at ``now``; events without a usable end time
    last one hour.
    """
    if event.date is None:
        start = (now or utc_now()).astimezone(timezone.utc).replace(microsecond=0)
    else:
        start = datetime.combine(event.date, _parse_clock(event.time) or time.min, tzinfo=timezone.utc)
    end_clock = _parse_clock(event.end_time)
    end = start + DEFAULT_DURATION
    if end_clock is not None and event.date is not None:
        candidate = datetime.combine(event.date, end_clock, tzinfo=timezone.utc)
        if candidate > start:
            end = candidate
    return start, end


def to_calendar_text(event: CalendarEvent, now: datetime | None = None) -> str:
    stamp = (now or utc_now()).astimezone(timezone.utc).replace(microsecond=0)
    start, end = event_bounds(event, now=stamp)
    title = event.title or ""

    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")

    vevent = ICEvent()
    vevent.add("UID", f"{event.id or int(stamp.timestamp() * 1000)}-{format_ical_datetime(stamp)}@{UID_DOMAIN}")
    vevent.add("DTSTAMP", stamp)
    vevent.add("DTSTART", start)
    vevent.add("DTEND", end)
    vevent.add("SUMMARY", title)
    vevent.add("DESCRIPTION", event.description or event.notes or "")
    vevent.add("LOCATION", event.location or "")

    alarm = ICAlarm()
    alarm.add("TRIGGER", -REMINDER_BEFORE)
    alarm.add("ACTION", "DISPLAY")
    alarm.add("DESCRIPTION", f"Reminder for {title}")
    vevent.add_component(alarm)

    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")
