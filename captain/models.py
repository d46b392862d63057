from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any

from captain.identity import identities_match, normalize_id
from captain.log import get_logger

log = get_logger(__name__)


PIPELINE_PHASES: dict[str, list[str]] = {
    "Initial Contact": ["Bookmarked", "Interested", "Recruiter Contact", "Networking"],
    "Application": ["Preparing Application", "Applied", "Application Acknowledged"],
    "Interview": [
        "Screening",
        "Technical Assessment",
        "First Interview",
        "Second Interview",
        "Final Interview",
        "Reference Check",
    ],
    "Decision": [
        "Negotiating",
        "Offer Received",
        "Offer Accepted",
        "Offer Declined",
        "Rejected",
        "Withdrawn",
        "Position Filled",
        "Position Cancelled",
    ],
    "Follow-up": ["Following Up", "Waiting"],
}
PIPELINE_STATUSES = [status for statuses in PIPELINE_PHASES.values() for status in statuses]
DEFAULT_STATUS = "Bookmarked"

EVENT_TYPES = ("interview", "deadline", "followup", "assessment", "general")
EVENT_SOURCE_USER = "user"
EVENT_SOURCE_DERIVED = "derived"

SENDER_USER = "user"
SENDER_ASSISTANT = "assistant"
_SENDER_ALIASES = {"user": SENDER_USER, "assistant": SENDER_ASSISTANT, "ai": SENDER_ASSISTANT}

_DATE_FORMATS = ("%Y-%m-%d", "%B %d, %Y", "%b %d, %Y", "%m/%d/%Y")


def status_phase(status: str) -> str:
    for phase, statuses in PIPELINE_PHASES.items():
        if status in statuses:
            return phase
    return ""


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_date(value: Any) -> date | None:
    """Best-effort date parsing; returns None instead of raising."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return parse_iso_datetime(text).date()
    except ValueError:
        return None


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def normalize_sender(value: Any) -> str:
    sender = _SENDER_ALIASES.get(str(value or "").strip().lower())
    if sender is None:
        raise ValueError(f"Unknown chat sender: {value!r}")
    return sender


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _canonical_keys(data: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    output: dict[str, Any] = {}
    for key, value in data.items():
        output[aliases.get(key, key)] = value
    return output


def _normalize_tags(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    tags: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if isinstance(item, dict):
            name = str(item.get("name", "")).strip()
            if not name:
                continue
            tags.append(
                {
                    "id": item.get("id", index),
                    "name": name,
                    "color": str(item.get("color", "gray") or "gray"),
                }
            )
        elif str(item or "").strip():
            tags.append({"id": index, "name": str(item).strip(), "color": "gray"})
    return tags


def _normalize_keywords(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(x).strip() for x in raw if str(x or "").strip()]


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 90
    temperature: float = 0.7
    max_tokens: int = 1500

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip()
            or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 90))),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=max(1, int(data.get("max_tokens", 1500))),
        )


@dataclass
class RemoteStoreConfig:
    base_url: str = ""
    api_key: str = ""
    table: str = "applications"
    events_table: str = "events"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteStoreConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            table=str(data.get("table", "applications")).strip() or "applications",
            events_table=str(data.get("events_table", "events")).strip() or "events",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class StorageConfig:
    autosave: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(autosave=bool(data.get("autosave", True)))


@dataclass
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    remote: RemoteStoreConfig = field(default_factory=RemoteStoreConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            ai=AIConfig.from_dict(data.get("ai")),
            remote=RemoteStoreConfig.from_dict(data.get("remote")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


OPPORTUNITY_ALIASES = {
    "referenceDate": "reference_date",
    "appliedDate": "reference_date",
    "applied_date": "reference_date",
    "jobDescription": "job_description",
    "recruiterName": "recruiter_name",
    "recruiterEmail": "recruiter_email",
    "recruiterPhone": "recruiter_phone",
    "applicationUrl": "application_url",
    "updatedAt": "updated_at",
}


@dataclass
class Opportunity:
    id: str
    company: str = ""
    position: str = ""
    status: str = DEFAULT_STATUS
    reference_date: str = ""
    job_description: str = ""
    resume: str = ""
    recruiter_name: str = ""
    recruiter_email: str = ""
    recruiter_phone: str = ""
    notes: str = ""
    location: str = ""
    salary: str = ""
    application_url: str = ""
    source: str = ""
    tags: list[dict[str, Any]] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Opportunity":
        if not isinstance(data, dict):
            raise TypeError("opportunity payload must be an object")
        values = _canonical_keys(data, OPPORTUNITY_ALIASES)
        return cls(
            id=normalize_id(values.get("id")),
            company=_text(values.get("company")).strip(),
            position=_text(values.get("position")).strip(),
            status=_text(values.get("status")).strip() or DEFAULT_STATUS,
            reference_date=_text(values.get("reference_date")).strip(),
            job_description=_text(values.get("job_description")),
            resume=_text(values.get("resume")),
            recruiter_name=_text(values.get("recruiter_name")),
            recruiter_email=_text(values.get("recruiter_email")),
            recruiter_phone=_text(values.get("recruiter_phone")),
            notes=_text(values.get("notes")),
            location=_text(values.get("location")),
            salary=_text(values.get("salary")),
            application_url=_text(values.get("application_url")),
            source=_text(values.get("source")),
            tags=_normalize_tags(values.get("tags")),
            keywords=_normalize_keywords(values.get("keywords")),
            updated_at=_text(values.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_updates(self, **kwargs: Any) -> "Opportunity":
        return replace(self, **kwargs)

    def apply_patch(self, patch: dict[str, Any]) -> "Opportunity":
        """Merge a partial record; keys that are not opportunity fields are ignored."""
        if not isinstance(patch, dict):
            raise TypeError("opportunity patch must be an object")
        merged = self.to_dict()
        for key, value in _canonical_keys(patch, OPPORTUNITY_ALIASES).items():
            if key in merged:
                merged[key] = value
        return Opportunity.from_dict(merged)

    @property
    def phase(self) -> str:
        return status_phase(self.status)


EVENT_ALIASES = {
    "opportunityId": "opportunity_id",
    "endTime": "end_time",
    "startDate": "date",
}


def _normalize_event_type(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in EVENT_TYPES else "general"


def _event_date(value: Any) -> date | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    parsed = parse_date(value)
    if parsed is None:
        log.warning("Unparseable event date %r, using today", value)
        return date.today()
    return parsed


@dataclass
class CalendarEvent:
    id: str
    title: str = ""
    date: date | None = None
    type: str = "general"
    opportunity_id: str | None = None
    source: str = EVENT_SOURCE_USER
    time: str = ""
    end_time: str = ""
    description: str = ""
    location: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarEvent":
        if not isinstance(data, dict):
            raise TypeError("event payload must be an object")
        values = _canonical_keys(data, EVENT_ALIASES)
        raw_opportunity_id = values.get("opportunity_id")
        opportunity_id = normalize_id(raw_opportunity_id) or None
        source = str(values.get("source", EVENT_SOURCE_USER) or EVENT_SOURCE_USER).strip().lower()
        if source not in {EVENT_SOURCE_USER, EVENT_SOURCE_DERIVED}:
            source = EVENT_SOURCE_USER
        return cls(
            id=normalize_id(values.get("id")),
            title=_text(values.get("title")).strip(),
            date=_event_date(values.get("date")),
            type=_normalize_event_type(values.get("type")),
            opportunity_id=opportunity_id,
            source=source,
            time=_text(values.get("time")).strip(),
            end_time=_text(values.get("end_time")).strip(),
            description=_text(values.get("description")),
            location=_text(values.get("location")),
            notes=_text(values.get("notes")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["date"] = serialize_date(self.date)
        return payload

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        return replace(self, **kwargs)

    def apply_patch(self, patch: dict[str, Any]) -> "CalendarEvent":
        if not isinstance(patch, dict):
            raise TypeError("event patch must be an object")
        merged = self.to_dict()
        for key, value in _canonical_keys(patch, EVENT_ALIASES).items():
            if key in merged:
                merged[key] = value
        return CalendarEvent.from_dict(merged)

    @property
    def is_derived(self) -> bool:
        return self.source == EVENT_SOURCE_DERIVED

    def belongs_to(self, opportunity_id: Any) -> bool:
        return self.opportunity_id is not None and identities_match(self.opportunity_id, opportunity_id)


@dataclass
class ChatMessage:
    id: str
    message: str
    sender: str
    timestamp: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        if not isinstance(data, dict):
            raise TypeError("chat message must be an object")
        return cls(
            id=normalize_id(data.get("id")),
            message=_text(data.get("message", data.get("text"))),
            sender=normalize_sender(data.get("sender")),
            timestamp=_text(data.get("timestamp")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class UserProfile:
    name: str = ""
    email: str = ""
    preferences: dict[str, Any] = field(default_factory=lambda: {"dark_mode": False})

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserProfile":
        data = data or {}
        preferences = data.get("preferences", {"dark_mode": False})
        if not isinstance(preferences, dict):
            preferences = {"dark_mode": False}
        if "darkMode" in preferences:
            preferences = dict(preferences)
            preferences["dark_mode"] = bool(preferences.pop("darkMode"))
        return cls(
            name=_text(data.get("name")).strip(),
            email=_text(data.get("email")).strip(),
            preferences=dict(preferences),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def merged(self, patch: dict[str, Any]) -> "UserProfile":
        if not isinstance(patch, dict):
            raise TypeError("profile patch must be an object")
        return UserProfile.from_dict(_deep_merge(self.to_dict(), patch))


def _chat_thread(owner: str, messages: list[Any]) -> list[ChatMessage]:
    thread: list[ChatMessage] = []
    for item in messages:
        if not isinstance(item, dict):
            continue
        try:
            thread.append(ChatMessage.from_dict(item))
        except ValueError as exc:
            log.warning("Skipped chat message in thread %s: %s", owner, exc)
    return thread


@dataclass
class AppState:
    opportunities: list[Opportunity] = field(default_factory=list)
    events: list[CalendarEvent] = field(default_factory=list)
    chat_messages: dict[str, list[ChatMessage]] = field(default_factory=dict)
    master_resume: str = ""
    user_profile: UserProfile = field(default_factory=UserProfile)

    def with_updates(self, **kwargs: Any) -> "AppState":
        return replace(self, **kwargs)

    def find_opportunity(self, opportunity_id: Any) -> Opportunity | None:
        for opportunity in self.opportunities:
            if identities_match(opportunity.id, opportunity_id):
                return opportunity
        return None

    def find_event(self, event_id: Any) -> CalendarEvent | None:
        for event in self.events:
            if identities_match(event.id, event_id):
                return event
        return None

    def has_opportunity(self, opportunity_id: Any) -> bool:
        return self.find_opportunity(opportunity_id) is not None

    def events_for(self, opportunity_id: Any, source: str | None = None) -> list[CalendarEvent]:
        return [
            event
            for event in self.events
            if event.belongs_to(opportunity_id) and (source is None or event.source == source)
        ]

    def event_ids_by_opportunity(self) -> dict[str, list[str]]:
        index: dict[str, list[str]] = {}
        for event in self.events:
            if event.opportunity_id is None:
                continue
            index.setdefault(normalize_id(event.opportunity_id), []).append(event.id)
        return index

    def thread(self, opportunity_id: Any) -> list[ChatMessage]:
        return list(self.chat_messages.get(normalize_id(opportunity_id), []))

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunities": [item.to_dict() for item in self.opportunities],
            "events": [item.to_dict() for item in self.events],
            "chat_messages": {
                key: [message.to_dict() for message in messages]
                for key, messages in self.chat_messages.items()
            },
            "master_resume": self.master_resume,
            "user_profile": self.user_profile.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppState":
        data = data or {}
        raw_threads = data.get("chat_messages", data.get("chatMessages")) or {}
        threads: dict[str, list[ChatMessage]] = {}
        if isinstance(raw_threads, dict):
            for key, messages in raw_threads.items():
                if not isinstance(messages, list):
                    continue
                owner = normalize_id(key)
                threads[owner] = _chat_thread(owner, messages)
        return cls(
            opportunities=[
                Opportunity.from_dict(item)
                for item in data.get("opportunities") or []
                if isinstance(item, dict)
            ],
            events=[
                CalendarEvent.from_dict(item) for item in data.get("events") or [] if isinstance(item, dict)
            ],
            chat_messages=threads,
            master_resume=_text(data.get("master_resume", data.get("masterResume"))),
            user_profile=UserProfile.from_dict(data.get("user_profile", data.get("userProfile"))),
        )


def initial_state() -> AppState:
    return AppState()


ADD_OPPORTUNITY = "ADD_OPPORTUNITY"
UPDATE_OPPORTUNITY = "UPDATE_OPPORTUNITY"
DELETE_OPPORTUNITY = "DELETE_OPPORTUNITY"
SET_OPPORTUNITIES = "SET_OPPORTUNITIES"
ADD_EVENT = "ADD_EVENT"
UPDATE_EVENT = "UPDATE_EVENT"
DELETE_EVENT = "DELETE_EVENT"
SET_EVENTS = "SET_EVENTS"
ADD_CHAT_MESSAGE = "ADD_CHAT_MESSAGE"
UPDATE_USER_PROFILE = "UPDATE_USER_PROFILE"
UPDATE_MASTER_RESUME = "UPDATE_MASTER_RESUME"
LOAD_DATA = "LOAD_DATA"

ACTION_TYPES = (
    ADD_OPPORTUNITY,
    UPDATE_OPPORTUNITY,
    DELETE_OPPORTUNITY,
    SET_OPPORTUNITIES,
    ADD_EVENT,
    UPDATE_EVENT,
    DELETE_EVENT,
    SET_EVENTS,
    ADD_CHAT_MESSAGE,
    UPDATE_USER_PROFILE,
    UPDATE_MASTER_RESUME,
    LOAD_DATA,
)


@dataclass
class Action:
    type: str
    payload: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> "Action":
        if isinstance(data, Action):
            return data
        if not isinstance(data, dict):
            return cls(type="")
        return cls(type=str(data.get("type", "") or ""), payload=data.get("payload"))

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload
        if hasattr(payload, "to_dict"):
            payload = payload.to_dict()
        return {"type": self.type, "payload": payload}
