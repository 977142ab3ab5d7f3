"""FastAPI server for quorum."""
from __future__ import annotations

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from typing import Dict, Set
import logging

from quorum import __version__
from quorum.analysis import build_structural_brief, compute_explore, compute_structural_analysis
from quorum.analysis.artifact import ArtifactEdits, normalize_artifact
from quorum.audit import AuditLog
from quorum.concierge.orchestrator import ConciergeOrchestrator
from quorum.config import Config, get_config
from quorum.errors import (
    InvalidRequestError,
    ProviderExhaustedError,
    SessionNotFoundError,
    WorkflowError,
)
from quorum.events import MessageBus, WorkflowMessage
from quorum.models.registry import ProviderRegistry
from quorum.session import now_iso
from quorum.store import SessionStore
from quorum.workflow.compiler import WorkflowCompiler
from quorum.workflow.context import ContextResolver
from quorum.workflow.engine import SessionRunner, WorkflowEngine
from quorum.workflow.requests import parse_request

logger = logging.getLogger(__name__)

app = FastAPI(title="quorum", version=__version__)


# WebSocket connection manager for real-time updates
class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}  # session_id -> set of websockets

    async def connect(self, websocket: WebSocket, session_id: str):
        await websocket.accept()
        if session_id not in self.active_connections:
            self.active_connections[session_id] = set()
        self.active_connections[session_id].add(websocket)

    def disconnect(self, websocket: WebSocket, session_id: str):
        if session_id in self.active_connections:
            self.active_connections[session_id].discard(websocket)
            if not self.active_connections[session_id]:
                del self.active_connections[session_id]

    async def broadcast(self, session_id: str, message: dict):
        if session_id in self.active_connections:
            dead_connections = set()
            for connection in self.active_connections[session_id]:
                try:
                    await connection.send_json(message)
                except Exception:
                    dead_connections.add(connection)
            for conn in dead_connections:
                self.active_connections[session_id].discard(conn)

    async def forward(self, message: WorkflowMessage) -> None:
        await self.broadcast(message.session_id, message.to_dict())


ws_manager = ConnectionManager()


def configure(target: FastAPI, config: Config, registry: ProviderRegistry | None = None) -> None:
    """Wire the store, bus, engine and concierge onto ``target.state``."""
    store = SessionStore(config.data_dir)
    bus = MessageBus()
    bus.subscribe(ws_manager.forward)
    bus.subscribe(AuditLog(config.data_dir / "audit.jsonl").record)
    registry = registry or ProviderRegistry.from_config(config.providers)
    engine = WorkflowEngine.from_config(config, registry, store=store, bus=bus)

    target.state.config = config
    target.state.store = store
    target.state.bus = bus
    target.state.registry = registry
    target.state.engine = engine
    target.state.resolver = ContextResolver(store)
    target.state.compiler = WorkflowCompiler(default_mapper=config.mapper)
    target.state.runner = SessionRunner()
    target.state.concierge = ConciergeOrchestrator.from_config(config, engine, store)


@app.on_event("startup")
def _startup() -> None:
    configure(app, get_config())


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "quorum"}


@app.post("/api/analyze")
async def analyze_api(payload: dict):
    artifact = payload.get("artifact", payload)
    analysis = compute_structural_analysis(artifact)
    return {"analysis": analysis.to_dict(), "brief": build_structural_brief(analysis)}


@app.post("/api/explore")
async def explore_api(payload: dict):
    query = str(payload.get("query") or "")
    if not query.strip():
        return _error("query required", 400)
    return compute_explore(query, payload.get("artifact")).to_dict()


@app.post("/api/workflows")
async def workflows_api(payload: dict, request: Request, wait: bool = False):
    state = request.app.state
    try:
        workflow_request = parse_request(payload)
        if workflow_request.session_id:
            # Let a cancelled workflow finalize before its turn is read back.
            await state.runner.stop(workflow_request.session_id)
        resolved = state.resolver.resolve(workflow_request)
        workflow = state.compiler.compile(workflow_request, resolved)
    except SessionNotFoundError as exc:
        return _error(str(exc), 404)
    except InvalidRequestError as exc:
        return _error(str(exc), 400)

    task = await state.runner.start(workflow.context.session_id, state.engine.execute(workflow))
    if not wait:
        return JSONResponse(
            {"ok": True, "workflow_id": workflow.workflow_id, "session_id": workflow.context.session_id},
            status_code=202,
        )
    try:
        result = await task
    except ProviderExhaustedError as exc:
        return _error(str(exc), 502)
    return result.to_dict()


@app.get("/api/sessions")
async def sessions_api(request: Request, limit: int = 20):
    return {"sessions": request.app.state.store.list_sessions(limit=limit)}


@app.get("/api/sessions/{session_id}")
async def session_detail_api(session_id: str, request: Request):
    session = request.app.state.store.get(session_id)
    if not session:
        return _error("not found", 404)
    return session.to_dict()


@app.get("/api/sessions/{session_id}/turns/{turn_id}/analysis")
async def turn_analysis_api(session_id: str, turn_id: str, request: Request):
    session = request.app.state.store.get(session_id)
    if not session:
        return _error("not found", 404)
    try:
        turn = session.ai_turn(turn_id)
    except InvalidRequestError as exc:
        return _error(str(exc), 404)
    claim_map = turn.claim_map()
    analysis = compute_structural_analysis(claim_map)
    return {
        "turn_id": turn.id,
        "analysis": analysis.to_dict(),
        "brief": build_structural_brief(analysis),
        "explore": compute_explore(session.user_message_for(turn), claim_map).to_dict(),
    }


@app.post("/api/sessions/{session_id}/turns/{turn_id}/edits")
async def turn_edits_api(session_id: str, turn_id: str, payload: dict, request: Request):
    store: SessionStore = request.app.state.store
    edits = ArtifactEdits.from_dict(turn_id, payload)
    edits.edited_at = now_iso()
    outcome: Dict[str, str] = {}

    def _apply(session) -> None:
        turn = session.ai_turn(turn_id)
        turn.edits = edits.to_dict()
        outcome["intensity"] = edits.intensity(len(normalize_artifact(turn.artifact).claims))

    try:
        store.update(session_id, _apply)
    except SessionNotFoundError:
        return _error("not found", 404)
    except InvalidRequestError as exc:
        return _error(str(exc), 404)
    return {"ok": True, "turn_id": turn_id, "intensity": outcome["intensity"]}


async def _concierge_turn(request: Request, session_id: str | None, payload: dict):
    message = str(payload.get("message") or "").strip()
    if not message:
        return _error("message required", 400)
    try:
        reply = await request.app.state.concierge.handle_turn(session_id, message)
    except SessionNotFoundError:
        return _error("not found", 404)
    except WorkflowError as exc:
        return _error(str(exc), 502)
    return reply.to_dict()


@app.post("/api/concierge")
async def concierge_new_api(payload: dict, request: Request):
    return await _concierge_turn(request, None, payload)


@app.post("/api/sessions/{session_id}/concierge")
async def concierge_api(session_id: str, payload: dict, request: Request):
    return await _concierge_turn(request, session_id, payload)


@app.websocket("/ws/sessions/{session_id}")
async def websocket_session(websocket: WebSocket, session_id: str):
    """WebSocket endpoint for workflow and turn messages of one session."""
    await ws_manager.connect(websocket, session_id)
    try:
        session = websocket.app.state.store.get(session_id)
        await websocket.send_json({"type": "state", "session": session.summary() if session else None})
        while True:
            text = await websocket.receive_text()
            if text == "cancel":
                cancelled = websocket.app.state.runner.cancel(session_id)
                await websocket.send_json({"type": "cancelled", "ok": cancelled})
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, session_id)


def main():
    import uvicorn
    config = get_config()
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 8099))
    uvicorn.run("quorum.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
