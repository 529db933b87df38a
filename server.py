# FastAPI server for WikiPath.
# Receives navigation/tab events from the browser extension, answers popup
# commands, and serves session graphs to the visualization page.

import os
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError
from starlette.websockets import WebSocketState

load_dotenv()

# --- Logging Configuration ---
LOG_LEVEL = os.getenv("WIKIPATH_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("WIKIPATH_LOG_FILE")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
handlers = [logging.StreamHandler()]
if LOG_FILE:
    log_dir = os.path.dirname(LOG_FILE)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handlers.append(logging.FileHandler(LOG_FILE))

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, handlers=handlers)
logger = logging.getLogger("wikipath.server")

# --- Runtime Configuration ---
SESSION_TIMEOUT_MINUTES = float(os.getenv("WIKIPATH_SESSION_TIMEOUT_MINUTES", "30"))
STORE_PATH = os.getenv("WIKIPATH_STORE_PATH")
EVENT_QUEUE_SIZE = int(os.getenv("WIKIPATH_EVENT_QUEUE_SIZE", "256"))
HOST = os.getenv("WIKIPATH_HOST", "127.0.0.1")
PORT = int(os.getenv("WIKIPATH_PORT", "8000"))

# --- Local Imports ---
from dispatcher import EventDispatcher
from errors import DispatcherNotRunning, SessionNotFoundError, StoreError
from graph_builder import history_entries, load_session_graph, summarize_session
from session_manager import SessionManager
from state import (
    Command,
    ContextClosedEvent,
    ContextClosedResult,
    HistoryEntry,
    Message,
    NavigationEvent,
    NavigationResult,
    SessionGraph,
    SessionSummary,
)
from storage import InMemoryStore, JsonFileStore, KeyValueStore

MESSAGE_ADAPTER = TypeAdapter(Message)
COMMAND_ADAPTER = TypeAdapter(Command)


def build_store() -> KeyValueStore:
    if STORE_PATH:
        logger.info("Using JSON file store at %s", STORE_PATH)
        return JsonFileStore(STORE_PATH)
    logger.info("WIKIPATH_STORE_PATH not set - sessions are kept in memory only.")
    return InMemoryStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = getattr(app.state, "store", None) or build_store()
    manager = SessionManager(store, timeout=timedelta(minutes=SESSION_TIMEOUT_MINUTES))
    manager.load()
    dispatcher = EventDispatcher(manager, maxsize=EVENT_QUEUE_SIZE)
    dispatcher.start()
    app.state.manager = manager
    app.state.dispatcher = dispatcher
    try:
        yield
    finally:
        await dispatcher.stop()
        manager.shutdown()
        logger.info("WikiPath server shut down")


# --- FastAPI App Initialization ---
api = FastAPI(
    title="WikiPath",
    description="Records Wikipedia browsing sessions and derives their navigation graphs.",
    version="0.1.0",
    lifespan=lifespan,
)


@api.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@api.exception_handler(DispatcherNotRunning)
async def dispatcher_error_handler(request: Request, exc: DispatcherNotRunning):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# --- Event Ingestion ---

@api.post("/events/navigation", response_model=NavigationResult)
async def navigation_event(event: NavigationEvent, request: Request):
    """A tab finished (or started) loading a URL."""
    return await request.app.state.dispatcher.submit(event)


@api.post("/events/context-closed", response_model=ContextClosedResult)
async def context_closed_event(event: ContextClosedEvent, request: Request):
    """A tab was closed; ends the session when no tracked tabs remain."""
    return await request.app.state.dispatcher.submit(event)


# --- Popup Commands ---

@api.post("/command")
async def command_endpoint(request: Request, payload: Dict[str, Any] = Body(...)):
    """Handles getSessionData, toggleTracking, clearSession and exportSession."""
    try:
        command = COMMAND_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    result = await request.app.state.dispatcher.submit(command)
    return jsonable_encoder(result, by_alias=True)


@api.get("/session/summary", response_model=SessionSummary)
async def session_summary(request: Request):
    """Headline numbers for the popup."""
    manager: SessionManager = request.app.state.manager
    return summarize_session(
        manager.get_active(),
        now=manager.now(),
        past_sessions=len(manager.get_history()),
        is_tracking=manager.is_tracking,
    )


@api.get("/sessions", response_model=List[HistoryEntry])
async def list_sessions(request: Request):
    """Archived sessions, oldest first."""
    return history_entries(request.app.state.manager.get_history())


# --- Visualization ---

@api.get("/session/{session_id}/graph", response_model=SessionGraph)
async def session_graph(session_id: str, request: Request):
    """Returns the navigation graph of the active or an archived session."""
    try:
        return load_session_graph(request.app.state.manager, session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")


# --- Streaming Channel ---

def _reply(action: str | None, result: Any) -> Dict[str, Any]:
    return {"status": "ok", "action": action, "result": jsonable_encoder(result, by_alias=True)}


@api.websocket("/ws/events")
async def websocket_endpoint(websocket: WebSocket):
    """
    Long-lived channel for the extension: every JSON message is an event or a
    command, answered with one JSON reply in the same order.
    """
    logger.info("WebSocket connection attempt from %s", websocket.client)
    await websocket.accept()
    dispatcher: EventDispatcher = websocket.app.state.dispatcher
    try:
        while True:
            try:
                raw = await websocket.receive_json()
            except ValueError as exc:
                logger.debug("Rejected non-JSON frame: %s", exc)
                await websocket.send_json({"status": "error", "message": "Invalid JSON"})
                continue
            try:
                message = MESSAGE_ADAPTER.validate_python(raw)
            except ValidationError as exc:
                logger.debug("Rejected malformed message: %s", exc)
                await websocket.send_json({"status": "error", "message": "Invalid message", "errors": exc.errors(include_url=False, include_context=False)})
                continue
            try:
                result = await dispatcher.submit(message)
            except (StoreError, DispatcherNotRunning) as exc:
                await websocket.send_json({"status": "error", "action": message.action, "message": str(exc)})
                continue
            await websocket.send_json(_reply(message.action, result))
    except WebSocketDisconnect:
        logger.info("WebSocket client %s disconnected", websocket.client)
    except Exception:
        logger.exception("WebSocket error for client %s", websocket.client)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=1011)


# --- Main Execution ---
if __name__ == "__main__":
    uvicorn.run(api, host=HOST, port=PORT)
