"""
Library Assistant — FastAPI Server

================================================================================
Architecture:
  • Per-WebSocket session backed by a SessionController
  • The controller creates a hosted agent conversation (Tavus) seeded with
    the browser's book catalog, then drives the browser's call object
    through WebSocketRelayTransport: join, leave, app messages
  • Call events (participants, app messages, errors) flow back up the same
    socket and become tool calls → filter / recommendation updates
  • Every session is bounded by the time budget: soft wrap-up, hard
    wrap-up, then termination
================================================================================

Endpoints:
  WS  /ws/assistant         — per-session control + event stream
  GET /health               — server health
  GET /sessions             — list sessions with telemetry
  GET /session/{session_id} — single session detail

Client → Server messages:
  { type: "start_session", books: [...] }            → create + join
  { type: "stop_session" }                           → end the conversation
  { type: "restart_session" }                        → stop, then start again
  { type: "transport_event", event, payload, participants } → call event
  { type: "transport.ack", op, ok, error }           → join/leave ack
  { type: "set_mute", muted: bool }                  → microphone
  { type: "set_volume", on: bool }                   → local playback
  { type: "ping" }                                   → keepalive

Server → Client messages:
  { type: "status", message: "..." }                 → human-readable status
  { type: "filter_change", data: {...} }             → catalog filter criteria
  { type: "book_recommendation", data: [...] }       → recommended books
  { type: "transport.*" / "media.*", ... }           → call object commands
  { type: "session_started", data: {...} }           → ack + summary
  { type: "session_stopped", data: {...} }           → ack + summary
  { type: "pong" }                                   → keepalive ack
  { type: "error", message: "..." }                  → error
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .core.config import assistant_cfg, server_cfg
from .core.errors import ConfigurationError
from .core.models import CatalogItem, FilterCriteria
from .services.provider import TavusConversationProvider
from .services.registry import SessionRegistry
from .services.relay import RelayMediaSink, WebSocketRelayTransport
from .services.session_controller import SessionController

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("library_assistant")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Session Registry + Provider
# ---------------------------------------------------------------------------

registry = SessionRegistry()
provider = TavusConversationProvider(assistant_cfg)

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Library Assistant backend starting...")
    logger.info(f"   Tavus credentials configured: {assistant_cfg.has_credentials}")
    yield
    logger.info("🛑 Shutting down — ending all sessions...")
    await registry.stop_all()
    await provider.aclose()
    logger.info("🛑 Library Assistant backend stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Library Assistant — Conversational Book Finder",
    version=VERSION,
    description=(
        "Runs time-bounded conversations with a hosted video agent that "
        "only talks about the library's own catalog, and turns the agent's "
        "tool calls into live catalog filters and recommendations."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "provider_configured": assistant_cfg.has_credentials,
        "active_sessions": registry.active_count,
    }


@app.get("/sessions")
async def list_sessions():
    result: Dict[str, Any] = {}
    for sid, controller in registry.all_sessions.items():
        result[sid] = {
            "state": controller.state.value,
            "live": controller.is_live,
            "telemetry": controller.telemetry.to_dict(),
        }
    return result


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    controller = registry.get(session_id)
    if controller:
        return controller.summary()
    return {"error": "session not found"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_catalog(raw: Any) -> List[CatalogItem]:
    """Books arrive as plain dicts from the browser; camelCase or snake_case."""
    if not isinstance(raw, list):
        raise ValueError("books must be a list")
    return [CatalogItem.from_dict(entry) for entry in raw]


# ---------------------------------------------------------------------------
# WebSocket: Per-Session Assistant Stream
# ---------------------------------------------------------------------------

@app.websocket("/ws/assistant")
async def websocket_assistant(ws: WebSocket):
    """
    WebSocket endpoint — one SessionController at a time per connection.
    The browser runs the call; this side decides what happens in it.
    """
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    tasks: Set[asyncio.Task] = set()

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data, default=str))
        except Exception:
            pass

    # Callbacks for SessionController
    async def on_status(message: str) -> None:
        await send({"type": "status", "message": message})

    async def on_filter_change(criteria: FilterCriteria) -> None:
        await send({"type": "filter_change", "data": criteria.to_dict()})

    async def on_book_recommendation(books: List[CatalogItem]) -> None:
        await send({"type": "book_recommendation", "data": [b.to_dict() for b in books]})

    transport = WebSocketRelayTransport(send, session_id=session_id)
    media_sink = RelayMediaSink(send, session_id=session_id)
    controller: Optional[SessionController] = None
    start_task: Optional[asyncio.Task] = None

    def new_controller() -> SessionController:
        return registry.create(
            session_id=session_id,
            provider=provider,
            transport=transport,
            media_sink=media_sink,
            on_filter_change=on_filter_change,
            on_book_recommendation=on_book_recommendation,
            on_status=on_status,
        )

    # start/stop/restart wait on acks that arrive through this loop,
    # so they run beside it, never inline.
    def spawn(coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def _start(target: SessionController, books: List[CatalogItem]) -> None:
        try:
            info = await target.start(books, assistant_cfg)
        except ConfigurationError as e:
            await send({"type": "error", "message": str(e)})
            return
        except Exception as e:
            logger.error(f"[{session_id}] Failed to start session: {e}", exc_info=True)
            await send({"type": "error", "message": f"Failed to start assistant: {str(e)[:100]}"})
            return
        await send({"type": "session_started", "data": info})

    async def _stop(target: SessionController) -> None:
        summary = await target.stop()
        await send({"type": "session_stopped", "data": summary})

    async def _restart(target: SessionController) -> None:
        try:
            info = await target.restart()
        except ConfigurationError as e:
            await send({"type": "error", "message": str(e)})
            return
        await send({"type": "session_started", "data": info})

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue

            msg_type = message.get("type", "")

            # ── Start session ──
            if msg_type == "start_session":
                starting = start_task is not None and not start_task.done()
                if controller is not None and (controller.is_live or starting):
                    await send({"type": "error", "message": "Session already active"})
                    continue
                try:
                    books = parse_catalog(message.get("books", []))
                except (KeyError, TypeError, ValueError) as e:
                    await send({"type": "error", "message": f"Invalid book catalog: {str(e)[:100]}"})
                    continue
                if controller is not None:
                    # Each start gets a fresh controller; the old one is already torn down
                    await registry.stop_session(session_id)
                controller = new_controller()
                start_task = spawn(_start(controller, books))

            # ── Everything below needs a session ──
            elif msg_type in ("stop_session", "restart_session", "set_mute", "set_volume"):
                if controller is None:
                    await send({"type": "error", "message": "No active session"})
                    continue

                if msg_type == "stop_session":
                    spawn(_stop(controller))

                elif msg_type == "restart_session":
                    spawn(_restart(controller))

                elif msg_type == "set_mute":
                    applied = await controller.set_muted(bool(message.get("muted", True)))
                    if not applied:
                        await send({"type": "error", "message": "No active call to mute"})

                else:
                    controller.set_volume_on(bool(message.get("on", True)))

            # ── Call object → backend ──
            elif msg_type == "transport.ack":
                transport.handle_ack(message)

            elif msg_type == "transport_event":
                event = str(message.get("event", ""))
                if not event:
                    continue
                participants: Optional[Dict[str, Any]] = message.get("participants")
                if participants is not None and not isinstance(participants, dict):
                    participants = None
                await transport.feed_event(event, message.get("payload"), participants)

            # ── Keepalive ──
            elif msg_type == "ping":
                await send({"type": "pong"})

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        # No more acks can arrive — fail anything still waiting on one
        transport.close()
        for task in list(tasks):
            try:
                await task
            except Exception as e:
                logger.debug(f"[{session_id}] Session task ended with: {e}")
        await registry.stop_session(session_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "library_assistant.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        reload=True,
        log_level="info",
    )
