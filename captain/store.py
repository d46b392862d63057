from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from typing import Any

from captain.ai_client import OpenAICompatibleClient
from captain.application_service import RemoteApplicationService
from captain.derived_events import derive_events
from captain.identity import identities_match, normalize_id
from captain.ical_export import to_calendar_text
from captain.log import get_logger
from captain.models import (
    ADD_CHAT_MESSAGE,
    ADD_EVENT,
    ADD_OPPORTUNITY,
    DELETE_EVENT,
    DELETE_OPPORTUNITY,
    LOAD_DATA,
    SENDER_ASSISTANT,
    SENDER_USER,
    UPDATE_OPPORTUNITY,
    Action,
    AppConfig,
    AppState,
    CalendarEvent,
    ChatMessage,
    Opportunity,
    initial_state,
)
from captain.reducer import reduce
from captain.state_store import StateStore

log = get_logger(__name__)


class UnknownOpportunityError(LookupError):
    pass


def _action_details(action: Action) -> dict[str, Any]:
    payload = action.payload
    if isinstance(payload, dict):
        target = payload.get("id", payload.get("opportunity_id", payload.get("opportunityId")))
        return {"target": normalize_id(target)} if target is not None else {}
    if isinstance(payload, list):
        return {"count": len(payload)}
    if isinstance(payload, (str, int)) and action.type.startswith("DELETE"):
        return {"target": normalize_id(payload)}
    return {}


class Store:
    """Owns the application state and applies every change through the reducer.

    Remote-store and AI calls run outside the reducer; their results come back
    as ordinary actions.
    """

    def __init__(
        self,
        state_store: StateStore,
        *,
        remote: RemoteApplicationService | None = None,
        ai: OpenAICompatibleClient | None = None,
        autosave: bool = True,
        initial: AppState | None = None,
    ) -> None:
        self.state_store = state_store
        self.remote = remote
        self.ai = ai
        self.autosave = autosave
        self._lock = threading.RLock()
        self._state = initial or initial_state()

    @classmethod
    def from_config(cls, config: AppConfig, state_store: StateStore) -> "Store":
        return cls(
            state_store,
            remote=RemoteApplicationService(config.remote),
            ai=OpenAICompatibleClient(config.ai),
            autosave=config.storage.autosave,
        )

    @property
    def state(self) -> AppState:
        return self._state

    def dispatch(self, action: Action | dict[str, Any]) -> AppState:
        action = Action.from_dict(action)
        with self._lock:
            previous = self._state
            self._state = reduce(previous, action)
            if self._state is not previous:
                self._record(action)
                if self.autosave:
                    self.save()
            return self._state

    def _record(self, action: Action) -> None:
        try:
            self.state_store.record_action(action_type=action.type, details=_action_details(action))
        except sqlite3.Error as exc:
            log.error("Could not record %s: %s", action.type, exc)

    def save(self) -> bool:
        with self._lock:
            snapshot = self._state
        try:
            self.state_store.save_snapshot(snapshot)
        except (sqlite3.Error, OSError) as exc:
            log.error("Snapshot write failed: %s", exc)
            return False
        return True

    def load(self) -> AppState:
        snapshot = self.state_store.load_snapshot()
        with self._lock:
            if snapshot is not None:
                self._state = snapshot
                log.info(
                    "Restored snapshot with %d opportunities and %d events",
                    len(snapshot.opportunities),
                    len(snapshot.events),
                )
            return self._state

    def _remote_enabled(self) -> bool:
        return self.remote is not None and self.remote.is_configured()

    def _require_opportunity(self, opportunity_id: Any) -> Opportunity:
        opportunity = self._state.find_opportunity(opportunity_id)
        if opportunity is None:
            raise UnknownOpportunityError(f"Opportunity not found: {opportunity_id}")
        return opportunity

    def create_opportunity(self, data: dict[str, Any]) -> Opportunity:
        with self._lock:
            known = {item.id for item in self._state.opportunities}
            state = self.dispatch(Action(ADD_OPPORTUNITY, data))
            created = next((item for item in state.opportunities if item.id not in known), None)
        if created is None:
            raise ValueError("Opportunity payload was rejected.")
        if not self._remote_enabled():
            return created
        remote_id = self.remote.save_application(created)
        if identities_match(remote_id, created.id):
            return self._require_opportunity(created.id)
        state = self.dispatch(Action(UPDATE_OPPORTUNITY, {"id": created.id, "updates": {"id": remote_id}}))
        kept = state.find_opportunity(created.id)
        if kept is not None:
            log.warning("Remote id %s is already used locally, keeping %s", remote_id, created.id)
            return kept
        return self._require_opportunity(remote_id)

    def update_opportunity(self, opportunity_id: Any, updates: dict[str, Any]) -> Opportunity:
        current = self._require_opportunity(opportunity_id)
        self.dispatch(Action(UPDATE_OPPORTUNITY, {"id": current.id, "updates": updates}))
        updated = self._state.find_opportunity(current.id) or self._require_opportunity(updates.get("id"))
        if self._remote_enabled():
            if set(updates) == {"status"}:
                self.remote.update_status(updated.id, updated.status)
            else:
                self.remote.save_application(updated)
        return updated

    def change_status(self, opportunity_id: Any, status: str) -> Opportunity:
        return self.update_opportunity(opportunity_id, {"status": status})

    def remove_opportunity(self, opportunity_id: Any) -> bool:
        current = self._state.find_opportunity(opportunity_id)
        if current is None:
            log.info("Nothing to remove for opportunity %s", opportunity_id)
            return False
        self.dispatch(Action(DELETE_OPPORTUNITY, current.id))
        if self._remote_enabled():
            self.remote.delete_application(current.id)
        return True

    def hydrate_from_remote(self) -> AppState:
        """Replace local records with the remote tables.

        Reminders are derived again from each loaded status. User events the
        remote store does not hold yet are kept when their opportunity survives.
        """
        if not self._remote_enabled():
            log.info("Remote store not configured, keeping local state")
            return self._state
        opportunities, remote_events = self.remote.list_applications()
        with self._lock:
            loaded = {item.id for item in opportunities}
            remote_ids = {item.id for item in remote_events}
            unsynced = [
                item
                for item in self._state.events
                if not item.is_derived
                and item.id not in remote_ids
                and (item.opportunity_id is None or item.opportunity_id in loaded)
            ]
            if unsynced:
                log.info("Keeping %d local events the remote store does not have", len(unsynced))
            events = [*remote_events, *unsynced]
            for opportunity in opportunities:
                events.extend(derive_events(opportunity, taken=[item.id for item in events]))
            return self.dispatch(
                Action(
                    LOAD_DATA,
                    {
                        "opportunities": [item.to_dict() for item in opportunities],
                        "events": [item.to_dict() for item in events],
                    },
                )
            )

    def add_event(self, data: dict[str, Any]) -> CalendarEvent:
        with self._lock:
            known = {item.id for item in self._state.events}
            state = self.dispatch(Action(ADD_EVENT, data))
            created = next((item for item in state.events if item.id not in known), None)
        if created is None:
            raise ValueError("Event payload was rejected.")
        if self._remote_enabled() and created.opportunity_id is not None:
            self.remote.save_event(created)
        return created

    def remove_event(self, event_id: Any) -> bool:
        current = self._state.find_event(event_id)
        if current is None:
            log.info("Nothing to remove for event %s", event_id)
            return False
        self.dispatch(Action(DELETE_EVENT, current.id))
        if self._remote_enabled() and not current.is_derived and current.opportunity_id is not None:
            self.remote.delete_event(current.id)
        return True

    def ask_assistant(self, opportunity_id: Any, text: str) -> ChatMessage:
        """Append the user's message, ask the AI, append and return its reply."""
        opportunity = self._require_opportunity(opportunity_id)
        self.dispatch(
            Action(ADD_CHAT_MESSAGE, {"opportunity_id": opportunity.id, "message": text, "sender": SENDER_USER})
        )
        if self.ai is None:
            raise RuntimeError("AI client is not configured.")
        reply = self.ai.chat(
            opportunity=opportunity,
            history=self._state.thread(opportunity.id),
            master_resume=self._state.master_resume,
        )
        # The opportunity may have been deleted while the request was in flight.
        state = self.dispatch(
            Action(
                ADD_CHAT_MESSAGE,
                {"opportunity_id": opportunity.id, "message": reply, "sender": SENDER_ASSISTANT},
            )
        )
        thread = state.thread(opportunity.id)
        if not thread:
            raise UnknownOpportunityError(f"Opportunity not found: {opportunity.id}")
        return thread[-1]

    def tailor_resume(self, opportunity_id: Any) -> Opportunity:
        opportunity = self._require_opportunity(opportunity_id)
        if self.ai is None:
            raise RuntimeError("AI client is not configured.")
        resume = self.ai.tailor_resume(opportunity=opportunity, master_resume=self._state.master_resume)
        self.dispatch(Action(UPDATE_OPPORTUNITY, {"id": opportunity.id, "updates": {"resume": resume}}))
        return self._require_opportunity(opportunity.id)

    def export_event(self, event_id: Any, now: datetime | None = None) -> str | None:
        event = self._state.find_event(event_id)
        if event is None:
            return None
        return to_calendar_text(event, now=now)
