from __future__ import annotations

import uuid
from typing import Any, Callable

from captain.derived_events import derive_events
from captain.identity import fresh_id, identities_match, normalize_id
from captain.log import get_logger
from captain.models import (
    ADD_CHAT_MESSAGE,
    ADD_EVENT,
    ADD_OPPORTUNITY,
    DELETE_EVENT,
    DELETE_OPPORTUNITY,
    LOAD_DATA,
    SET_EVENTS,
    SET_OPPORTUNITIES,
    UPDATE_EVENT,
    UPDATE_MASTER_RESUME,
    UPDATE_OPPORTUNITY,
    UPDATE_USER_PROFILE,
    Action,
    AppState,
    CalendarEvent,
    ChatMessage,
    Opportunity,
    normalize_sender,
    serialize_datetime,
    utc_now,
)

log = get_logger(__name__)

# Raised while parsing a payload of a known action; the transition becomes a no-op.
MALFORMED_PAYLOAD_ERRORS = (TypeError, ValueError, KeyError)


def _target_and_patch(payload: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(payload, dict):
        raise TypeError("payload must be an object with id and updates")
    target = normalize_id(payload["id"])
    patch = payload.get("updates", payload.get("patch"))
    if not isinstance(patch, dict):
        raise TypeError("updates must be an object")
    return target, patch


def _target_id(payload: Any) -> str:
    if isinstance(payload, dict):
        payload = payload["id"]
    target = normalize_id(payload)
    if not target:
        raise ValueError("missing identifier")
    return target


def _prune_orphans(state: AppState) -> AppState:
    """Drop events and chat threads whose opportunity is gone."""
    known = {opportunity.id for opportunity in state.opportunities}
    events = [
        event
        for event in state.events
        if event.opportunity_id is None or normalize_id(event.opportunity_id) in known
    ]
    threads = {key: messages for key, messages in state.chat_messages.items() if key in known}
    if len(events) == len(state.events) and len(threads) == len(state.chat_messages):
        return state
    log.info(
        "Pruned %d orphaned events and %d orphaned chat threads",
        len(state.events) - len(events),
        len(state.chat_messages) - len(threads),
    )
    return state.with_updates(events=events, chat_messages=threads)


def _add_opportunity(state: AppState, payload: Any) -> AppState:
    opportunity = Opportunity.from_dict(payload)
    existing_ids = [item.id for item in state.opportunities]
    if not opportunity.id or state.has_opportunity(opportunity.id):
        new_id = fresh_id(existing_ids)
        log.info("Issued id %s for opportunity (requested %r)", new_id, opportunity.id)
        opportunity = opportunity.with_updates(id=new_id)
    return state.with_updates(
        opportunities=[*state.opportunities, opportunity],
        events=[*state.events, *derive_events(opportunity, taken=[event.id for event in state.events])],
    )


def _update_opportunity(state: AppState, payload: Any) -> AppState:
    target, patch = _target_and_patch(payload)
    current = state.find_opportunity(target)
    if current is None:
        log.info("Update for unknown opportunity %s ignored", target)
        return state
    updated = current.apply_patch(patch)

    rekeyed = not identities_match(current.id, updated.id)
    if rekeyed:
        if not updated.id:
            raise ValueError("opportunity id cannot be cleared")
        if state.has_opportunity(updated.id):
            log.warning("Cannot re-key opportunity %s to %s: id in use", current.id, updated.id)
            return state

    opportunities = [updated if item is current else item for item in state.opportunities]
    events = state.events
    threads = state.chat_messages

    if rekeyed:
        events = [
            event.with_updates(opportunity_id=updated.id) if event.belongs_to(current.id) else event
            for event in events
        ]
        threads = dict(threads)
        old_key = normalize_id(current.id)
        if old_key in threads:
            threads[updated.id] = threads.pop(old_key)

    if rekeyed or current.status != updated.status:
        events = [
            event
            for event in events
            if not (event.is_derived and (event.belongs_to(current.id) or event.belongs_to(updated.id)))
        ]
        events = [*events, *derive_events(updated, taken=[event.id for event in events])]

    return state.with_updates(opportunities=opportunities, events=events, chat_messages=threads)


def _delete_opportunity(state: AppState, payload: Any) -> AppState:
    target = _target_id(payload)
    current = state.find_opportunity(target)
    if current is None:
        log.info("Delete for unknown opportunity %s ignored", target)
        return state
    threads = {
        key: messages for key, messages in state.chat_messages.items() if not identities_match(key, current.id)
    }
    return state.with_updates(
        opportunities=[item for item in state.opportunities if item is not current],
        events=[event for event in state.events if not event.belongs_to(current.id)],
        chat_messages=threads,
    )


def _set_opportunities(state: AppState, payload: Any) -> AppState:
    if not isinstance(payload, list):
        raise TypeError("SET_OPPORTUNITIES expects a list")
    opportunities = [Opportunity.from_dict(item) for item in payload]
    return _prune_orphans(state.with_updates(opportunities=opportunities))


def _add_event(state: AppState, payload: Any) -> AppState:
    event = CalendarEvent.from_dict(payload)
    if event.opportunity_id is not None:
        owner = state.find_opportunity(event.opportunity_id)
        if owner is None:
            log.info("Event references unknown opportunity %s, ignored", event.opportunity_id)
            return state
        event = event.with_updates(opportunity_id=owner.id)
    if not event.id or state.find_event(event.id) is not None:
        event = event.with_updates(id=fresh_id(item.id for item in state.events))
    return state.with_updates(events=[*state.events, event])


def _update_event(state: AppState, payload: Any) -> AppState:
    target, patch = _target_and_patch(payload)
    current = state.find_event(target)
    if current is None:
        log.info("Update for unknown event %s ignored", target)
        return state
    updated = current.apply_patch(patch)
    if not updated.id:
        raise ValueError("event id cannot be cleared")
    if updated.opportunity_id is not None and not state.has_opportunity(updated.opportunity_id):
        log.info("Event %s cannot point at unknown opportunity %s", current.id, updated.opportunity_id)
        return state
    if not identities_match(current.id, updated.id) and state.find_event(updated.id) is not None:
        log.warning("Cannot re-key event %s to %s: id in use", current.id, updated.id)
        return state
    return state.with_updates(events=[updated if item is current else item for item in state.events])


def _delete_event(state: AppState, payload: Any) -> AppState:
    target = _target_id(payload)
    current = state.find_event(target)
    if current is None:
        log.info("Delete for unknown event %s ignored", target)
        return state
    return state.with_updates(events=[item for item in state.events if item is not current])


def _set_events(state: AppState, payload: Any) -> AppState:
    if not isinstance(payload, list):
        raise TypeError("SET_EVENTS expects a list")
    events = [CalendarEvent.from_dict(item) for item in payload]
    return _prune_orphans(state.with_updates(events=events))


def _add_chat_message(state: AppState, payload: Any) -> AppState:
    if not isinstance(payload, dict):
        raise TypeError("chat payload must be an object")
    raw_owner = payload.get("opportunity_id", payload.get("opportunityId"))
    owner = state.find_opportunity(raw_owner)
    if owner is None:
        log.info("Chat message for unknown opportunity %s ignored", raw_owner)
        return state
    text = payload.get("message", payload.get("text"))
    if text is None:
        raise KeyError("message")
    message = ChatMessage(
        id=normalize_id(payload.get("id")) or uuid.uuid4().hex,
        message=str(text),
        sender=normalize_sender(payload.get("sender")),
        timestamp=str(payload.get("timestamp") or serialize_datetime(utc_now())),
    )
    key = normalize_id(owner.id)
    threads = dict(state.chat_messages)
    threads[key] = [*threads.get(key, []), message]
    return state.with_updates(chat_messages=threads)


def _update_user_profile(state: AppState, payload: Any) -> AppState:
    return state.with_updates(user_profile=state.user_profile.merged(payload))


def _update_master_resume(state: AppState, payload: Any) -> AppState:
    if not isinstance(payload, str):
        raise TypeError("master resume must be text")
    return state.with_updates(master_resume=payload)


def _load_data(state: AppState, payload: Any) -> AppState:
    if not isinstance(payload, dict):
        raise TypeError("LOAD_DATA expects an object")
    loaded = AppState.from_dict(payload)

    def supplied(*keys: str) -> bool:
        return any(payload.get(key) is not None for key in keys)

    hydrated = state.with_updates(
        opportunities=loaded.opportunities if supplied("opportunities") else state.opportunities,
        events=loaded.events if supplied("events") else state.events,
        chat_messages=loaded.chat_messages if supplied("chat_messages", "chatMessages") else state.chat_messages,
        master_resume=loaded.master_resume if supplied("master_resume", "masterResume") else state.master_resume,
        user_profile=loaded.user_profile if supplied("user_profile", "userProfile") else state.user_profile,
    )
    return _prune_orphans(hydrated)


HANDLERS: dict[str, Callable[[AppState, Any], AppState]] = {
    ADD_OPPORTUNITY: _add_opportunity,
    UPDATE_OPPORTUNITY: _update_opportunity,
    DELETE_OPPORTUNITY: _delete_opportunity,
    SET_OPPORTUNITIES: _set_opportunities,
    ADD_EVENT: _add_event,
    UPDATE_EVENT: _update_event,
    DELETE_EVENT: _delete_event,
    SET_EVENTS: _set_events,
    ADD_CHAT_MESSAGE: _add_chat_message,
    UPDATE_USER_PROFILE: _update_user_profile,
    UPDATE_MASTER_RESUME: _update_master_resume,
    LOAD_DATA: _load_data,
}


def reduce(state: AppState, action: Action | dict[str, Any]) -> AppState:
    """Apply one action and return the next state.

    Never raises for action content: unknown action types return ``state``
    itself and malformed payloads of known types are logged and ignored, so
    the input state is never partially updated.
    """
    action = Action.from_dict(action)
    handler = HANDLERS.get(action.type)
    if handler is None:
        log.debug("Unknown action type %r ignored", action.type)
        return state
    try:
        return handler(state, action.payload)
    except MALFORMED_PAYLOAD_ERRORS as exc:
        log.warning("Malformed %s payload ignored: %s", action.type, exc)
        return state
