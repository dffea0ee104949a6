"""FastAPI inspection and trigger API for a running engine.

Endpoints:
    GET  /api/state                         current document
    GET  /api/state/value?path=             value at a path
    PUT  /api/state/value                   set a value ({path, value})
    POST /api/state/patches                 apply a patch batch as one event
    GET  /api/history?limit=                recent state events
    GET  /api/checkpoints                   list checkpoints
    POST /api/checkpoints                   create a checkpoint ({id?, metadata?})
    POST /api/checkpoints/{id}/restore      restore a checkpoint
    POST /api/undo, /api/redo               step through history
    GET  /api/actions                       registered definitions
    GET  /api/actions/{id}                  one definition
    POST /api/actions/{id}/execute          run one action
    POST /api/triggers/{type}               fan a trigger out ({payload?}); signed when a webhook config is set
    GET  /api/circuits                      circuit breaker stats
    POST /api/circuits/{key}/reset          reset one circuit
    GET  /api/bundle                        export document + history + checkpoints
    POST /api/bundle                        import a bundle
    GET  /api/stats                         engine-wide stats
    WS   /ws/live                           a state snapshot, then state changes and action events
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from actionrail.core.config import EngineConfig
from actionrail.core.errors import ActionError, ActionNotFoundError, StateError, ValidationError
from actionrail.core.models import TriggerType
from actionrail.core.serialization import to_jsonable
from actionrail.engine import Engine

logger = logging.getLogger("actionrail.server")


class ValueBody(BaseModel):
    path: str
    value: Any = None


class PatchesBody(BaseModel):
    patches: list[dict[str, Any]]
    metadata: dict[str, Any] = Field(default_factory=dict)


class CheckpointBody(BaseModel):
    id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TriggerBody(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ExecuteBody(BaseModel):
    previous_results: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BundleBody(BaseModel):
    bundle: dict[str, Any]
    validate_checksum: bool = True


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ActionNotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, StateError):
        status = 404 if exc.code in ("PATH_NOT_FOUND", "CHECKPOINT_NOT_FOUND", "EVENT_NOT_FOUND") else 400
        return HTTPException(status_code=status, detail=exc.to_dict())
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, ActionError):
        return HTTPException(status_code=502, detail=exc.to_dict())
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    engine: Engine | None = None,
    config: EngineConfig | None = None,
    *,
    manage_engine: bool | None = None,
) -> FastAPI:
    """Create the API around ``engine`` (built from ``config`` when not given).

    An engine created here is initialized and closed with the app. A
    caller-supplied engine is left to the caller unless ``manage_engine``.
    """
    owns_engine = engine is None if manage_engine is None else manage_engine
    if engine is None:
        engine = Engine(config)
    ws_clients: set[WebSocket] = set()

    async def broadcast(event_type: str, data: dict[str, Any]) -> None:
        if not ws_clients:
            return
        message = json.dumps({"type": event_type, "data": to_jsonable(data)})
        disconnected: set[WebSocket] = set()
        for ws in ws_clients:
            try:
                await ws.send_text(message)
            except Exception:
                disconnected.add(ws)
        ws_clients.difference_update(disconnected)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if owns_engine:
            await engine.initialize()
        unsubscribe = engine.dispatcher.subscribe("*", broadcast)
        logger.info("Inspection API started: %d actions registered", len(engine.registry))
        try:
            yield
        finally:
            unsubscribe()
            if owns_engine:
                await engine.close()

    app = FastAPI(
        title="actionrail: action execution inspector",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- State ---

    @app.get("/api/state")
    async def get_state() -> dict[str, Any]:
        return {"state": engine.state.get_state(), "checksum": engine.state.checksum}

    @app.get("/api/state/value")
    async def get_value(path: str = Query(..., min_length=1)) -> dict[str, Any]:
        try:
            exists = engine.state.has(path)
        except StateError as exc:
            raise _http_error(exc) from exc
        if not exists:
            raise HTTPException(status_code=404, detail=f"Nothing at {path}")
        return {"path": path, "value": engine.state.get(path)}

    @app.put("/api/state/value")
    async def set_value(body: ValueBody) -> dict[str, Any]:
        try:
            event = engine.state.set_value(body.path, body.value, {"source": "api"})
        except StateError as exc:
            raise _http_error(exc) from exc
        return {"event": to_jsonable(event.to_dict()) if event else None}

    @app.post("/api/state/patches")
    async def apply_patches(body: PatchesBody) -> dict[str, Any]:
        try:
            event = engine.state.apply_patches(body.patches, {"source": "api", **body.metadata})
        except StateError as exc:
            raise _http_error(exc) from exc
        return {"event": to_jsonable(event.to_dict()) if event else None}

    @app.get("/api/history")
    async def get_history(limit: int = Query(50, ge=1, le=1000)) -> list[dict[str, Any]]:
        return to_jsonable([e.to_dict() for e in engine.state.history(limit)])

    # --- Checkpoints / undo ---

    @app.get("/api/checkpoints")
    async def list_checkpoints() -> list[dict[str, Any]]:
        return to_jsonable(engine.state.list_checkpoints())

    @app.post("/api/checkpoints")
    async def create_checkpoint(body: CheckpointBody) -> dict[str, Any]:
        snapshot = engine.state.create_checkpoint(body.id, body.metadata)
        return {"id": snapshot.id, "checksum": snapshot.checksum, "event_id": snapshot.event_id}

    @app.post("/api/checkpoints/{checkpoint_id}/restore")
    async def restore_checkpoint(checkpoint_id: str) -> dict[str, Any]:
        try:
            event = engine.state.restore_checkpoint(checkpoint_id)
        except StateError as exc:
            raise _http_error(exc) from exc
        return {"event_id": event.id, "checksum": engine.state.checksum}

    @app.post("/api/undo")
    async def undo() -> dict[str, Any]:
        event = engine.state.undo()
        if event is None:
            raise HTTPException(status_code=409, detail="Nothing to undo")
        return {"event_id": event.id, "checksum": engine.state.checksum}

    @app.post("/api/redo")
    async def redo() -> dict[str, Any]:
        event = engine.state.redo()
        if event is None:
            raise HTTPException(status_code=409, detail="Nothing to redo")
        return {"event_id": event.id, "checksum": engine.state.checksum}

    # --- Actions ---

    @app.get("/api/actions")
    async def list_actions(kind: str | None = None, tag: str | None = None) -> list[dict[str, Any]]:
        definitions = engine.registry.all()
        if kind:
            definitions = [d for d in definitions if d.kind.value == kind]
        if tag:
            definitions = [d for d in definitions if tag in d.tags]
        return to_jsonable([d.to_dict() for d in definitions])

    @app.get("/api/actions/{action_id}")
    async def get_action(action_id: str) -> dict[str, Any]:
        try:
            return to_jsonable(engine.registry.get(action_id).to_dict())
        except ActionNotFoundError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/actions/{action_id}/execute")
    async def execute_action(action_id: str, body: ExecuteBody | None = None) -> dict[str, Any]:
        body = body or ExecuteBody()
        context = engine.orchestrator.new_context(
            action_id,
            previous_results=body.previous_results,
            metadata=body.metadata,
        )
        try:
            result = await engine.execute(action_id, context)
        except (ActionError, StateError) as exc:
            raise _http_error(exc) from exc
        return to_jsonable(result.to_dict())

    @app.post("/api/triggers/{trigger}")
    async def fire_trigger(trigger: str, request: Request) -> dict[str, Any]:
        try:
            trigger_type = TriggerType(trigger)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown trigger {trigger!r}") from exc
        raw = await request.body()
        if trigger_type.value in engine.webhooks:
            check = engine.webhooks.validate_request(trigger_type.value, raw, request.headers)
            if not check.valid:
                raise HTTPException(status_code=401, detail=check.error)
        try:
            body = TriggerBody.model_validate_json(raw) if raw.strip() else TriggerBody()
        except PydanticValidationError as exc:
            raise HTTPException(status_code=422, detail=json.loads(exc.json(include_url=False))) from exc
        results = await engine.trigger(trigger_type, body.payload)
        return {"trigger": trigger_type.value, "results": to_jsonable([r.to_dict() for r in results])}

    # --- Resilience ---

    @app.get("/api/circuits")
    async def list_circuits() -> dict[str, Any]:
        return to_jsonable(engine.breaker.all_stats())

    @app.post("/api/circuits/{key}/reset")
    async def reset_circuit(key: str) -> dict[str, Any]:
        engine.breaker.reset(key)
        return {"key": key, "phase": engine.breaker.phase(key).value}

    @app.get("/api/stats")
    async def stats() -> dict[str, Any]:
        return to_jsonable(engine.stats())

    # --- Bundles ---

    @app.get("/api/bundle")
    async def export_bundle() -> dict[str, Any]:
        return to_jsonable(engine.state.export_bundle())

    @app.post("/api/bundle")
    async def import_bundle(body: BundleBody) -> dict[str, Any]:
        try:
            engine.state.import_bundle(body.bundle, validate_checksum=body.validate_checksum)
        except StateError as exc:
            raise _http_error(exc) from exc
        return {"checksum": engine.state.checksum, "events": len(engine.state.events)}

    # --- WebSocket for live updates ---

    @app.websocket("/ws/live")
    async def websocket_live(ws: WebSocket) -> None:
        await ws.accept()
        ws_clients.add(ws)
        logger.info("WebSocket client connected (total=%d)", len(ws_clients))
        try:
            await ws.send_text(
                json.dumps(
                    {
                        "type": "state.snapshot",
                        "data": {"state": to_jsonable(engine.state.get_state()), "checksum": engine.state.checksum},
                    }
                )
            )
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            ws_clients.discard(ws)
            logger.info("WebSocket client disconnected (total=%d)", len(ws_clients))

    @app.get("/")
    async def index() -> dict[str, str]:
        return {"message": "actionrail inspection API", "docs": "/api/docs"}

    return app
