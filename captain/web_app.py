from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from captain.ai_client import AIClientError, OpenAICompatibleClient
from captain.application_service import RemoteStoreError
from captain.config_manager import ConfigManager
from captain.log import get_logger
from captain.state_store import StateStore
from captain.store import Store, UnknownOpportunityError

log = get_logger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ActionRequest(BaseModel):
    type: str = Field(min_length=1)
    payload: Any = None


class OpportunityCreateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventCreateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class OpportunityPatchRequest(BaseModel):
    updates: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.store = Store.from_config(self.config_manager.load(), self.state_store)
        self.store.load()

    def reload_clients(self) -> None:
        config = self.config_manager.load()
        fresh = Store.from_config(config, self.state_store)
        self.store.remote = fresh.remote
        self.store.ai = fresh.ai
        self.store.autosave = fresh.autosave


def _bad_gateway(exc: Exception) -> HTTPException:
    return HTTPException(status_code=502, detail=str(exc))


def create_app() -> FastAPI:
    config_path = os.getenv("CAPTAIN_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CAPTAIN_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Captain", version="0.1.0")
    app.state.context = context

    def store() -> Store:
        return app.state.context.store

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        app.state.context.reload_clients()
        log.info("Config updated, clients reloaded")
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/ai/test")
    def test_ai() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = OpenAICompatibleClient(config.ai).test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/state")
    def get_state() -> dict[str, Any]:
        return store().state.to_dict()

    @app.post("/api/actions")
    def post_action(request: ActionRequest) -> dict[str, Any]:
        before = store().state
        after = store().dispatch({"type": request.type, "payload": request.payload})
        return {"changed": after is not before, "state": after.to_dict()}

    @app.get("/api/actions/recent")
    def recent_actions(limit: int = 50) -> dict[str, Any]:
        return {"actions": app.state.context.state_store.recent_actions(limit=limit)}

    @app.post("/api/sync/pull")
    def pull_remote() -> dict[str, Any]:
        try:
            state = store().hydrate_from_remote()
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        return state.to_dict()

    @app.get("/api/opportunities")
    def list_opportunities() -> dict[str, Any]:
        return {"opportunities": [item.to_dict() for item in store().state.opportunities]}

    @app.post("/api/opportunities", status_code=201)
    def create_opportunity(request: OpportunityCreateRequest) -> dict[str, Any]:
        try:
            created = store().create_opportunity(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        return {"opportunity": created.to_dict()}

    @app.patch("/api/opportunities/{opportunity_id}")
    def patch_opportunity(opportunity_id: str, request: OpportunityPatchRequest) -> dict[str, Any]:
        try:
            updated = store().update_opportunity(opportunity_id, request.updates)
        except UnknownOpportunityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        return {
            "opportunity": updated.to_dict(),
            "events": [item.to_dict() for item in store().state.events_for(updated.id)],
        }

    @app.delete("/api/opportunities/{opportunity_id}")
    def delete_opportunity(opportunity_id: str) -> dict[str, Any]:
        try:
            removed = store().remove_opportunity(opportunity_id)
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        if not removed:
            raise HTTPException(status_code=404, detail=f"Opportunity not found: {opportunity_id}")
        return {"deleted": opportunity_id}

    @app.get("/api/opportunities/{opportunity_id}/chat")
    def get_chat(opportunity_id: str) -> dict[str, Any]:
        if not store().state.has_opportunity(opportunity_id):
            raise HTTPException(status_code=404, detail=f"Opportunity not found: {opportunity_id}")
        return {"messages": [item.to_dict() for item in store().state.thread(opportunity_id)]}

    @app.post("/api/opportunities/{opportunity_id}/chat")
    def post_chat(opportunity_id: str, request: ChatRequest) -> dict[str, Any]:
        try:
            reply = store().ask_assistant(opportunity_id, request.message)
        except UnknownOpportunityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except AIClientError as exc:
            raise _bad_gateway(exc) from exc
        return {"reply": reply.to_dict()}

    @app.post("/api/opportunities/{opportunity_id}/tailor-resume")
    def tailor_resume(opportunity_id: str) -> dict[str, Any]:
        try:
            updated = store().tailor_resume(opportunity_id)
        except UnknownOpportunityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except AIClientError as exc:
            raise _bad_gateway(exc) from exc
        return {"opportunity": updated.to_dict()}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        return {"events": [item.to_dict() for item in store().state.events]}

    @app.post("/api/events", status_code=201)
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        try:
            created = store().add_event(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        return {"event": created.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, Any]:
        try:
            removed = store().remove_event(event_id)
        except RemoteStoreError as exc:
            raise _bad_gateway(exc) from exc
        if not removed:
            raise HTTPException(status_code=404, detail=f"Event not found: {event_id}")
        return {"deleted": event_id}

    @app.get("/api/events/{event_id}/ics")
    def export_event(event_id: str) -> Response:
        text = store().export_event(event_id)
        if text is None:
            raise HTTPException(status_code=404, detail=f"Event not found: {event_id}")
        return Response(
            content=text,
            media_type="text/calendar",
            headers={"Content-Disposition": f'attachment; filename="event-{event_id}.ics"'},
        )

    return app
