"""
Library Assistant — WebSocket Relay Transport

================================================================================
THE BROWSER OWNS THE CALL; THE BACKEND DRIVES IT
================================================================================

Media capture and playback live in the browser's realtime call object.
The session controller lives here. This module bridges the two over the
UI WebSocket:

  backend → browser   transport.join / transport.leave / transport.app_message
                      transport.set_local_audio / transport.set_local_video
                      media.attach / media.detach / media.muted
  browser → backend   transport.ack {op, ok, error}
                      transport_event {event, payload, participants}

join() and leave() wait for the browser's ack; app messages are
fire-and-forget.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import TransportConfig, transport_cfg
from ..core.errors import TransportError
from ..core.interfaces import ANY_EVENT, EventHandler

logger = logging.getLogger("library_assistant.relay")

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


class WebSocketRelayTransport:
    """TransportAdapter whose call object runs in the connected browser."""

    def __init__(
        self,
        send: Sender,
        config: TransportConfig = transport_cfg,
        session_id: str = "",
    ) -> None:
        self._send = send
        self._config = config
        self._session_id = session_id
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._participants: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._joined = False
        self._send_tasks: "set[asyncio.Task]" = set()

    @property
    def joined(self) -> bool:
        return self._joined

    # ── TransportAdapter ────────────────────────────────────────────────

    async def join(self, url: str, local_audio: bool = True, local_video: bool = False) -> None:
        ack = await self._request(
            "join",
            {"type": "transport.join", "url": url,
             "local_audio": local_audio, "local_video": local_video},
            timeout=self._config.join_timeout,
        )
        if not ack.get("ok", False):
            raise TransportError(f"Failed to join: {ack.get('error') or 'rejected by client'}")
        self._joined = True
        logger.info(f"[{self._session_id}] Joined call {url}")

    async def leave(self) -> None:
        if not self._joined:
            return
        self._joined = False
        try:
            ack = await self._request(
                "leave", {"type": "transport.leave"}, timeout=self._config.leave_timeout,
            )
        finally:
            self._participants.clear()
        if not ack.get("ok", True):
            raise TransportError(f"Leave failed: {ack.get('error')}")
        logger.info(f"[{self._session_id}] Left call")

    async def set_local_audio(self, enabled: bool) -> None:
        await self._command({"type": "transport.set_local_audio", "enabled": enabled})

    async def set_local_video(self, enabled: bool) -> None:
        await self._command({"type": "transport.set_local_video", "enabled": enabled})

    def send_app_message(self, payload: Dict[str, Any], target: str = "*") -> None:
        if not self._joined:
            raise TransportError("Cannot send app message — not joined")
        task = asyncio.get_running_loop().create_task(
            self._send({"type": "transport.app_message", "payload": payload, "target": target})
        )
        self._send_tasks.add(task)
        task.add_done_callback(self._on_send_done)

    def participants(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._participants)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    # ── Inbound from the browser ────────────────────────────────────────

    def handle_ack(self, message: Dict[str, Any]) -> None:
        op = str(message.get("op", ""))
        future = self._pending.pop(op, None)
        if future is None or future.done():
            logger.debug(f"[{self._session_id}] Unexpected ack for '{op}'")
            return
        future.set_result(message)

    async def feed_event(
        self,
        event: str,
        payload: Any = None,
        participants: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        """Deliver one browser-side call event to subscribed handlers."""
        if participants is not None:
            self._participants = dict(participants)
        if event == "left-meeting":
            self._joined = False

        handlers = list(self._handlers.get(event, [])) + list(self._handlers.get(ANY_EVENT, []))
        for handler in handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[{self._session_id}] Handler for '{event}' failed: {e}", exc_info=True)

    def close(self) -> None:
        """Fail any outstanding request; called when the WebSocket goes away."""
        for op, future in self._pending.items():
            if not future.done():
                future.set_exception(TransportError(f"Connection closed during {op}"))
        self._pending.clear()
        self._joined = False

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _request(self, op: str, message: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        previous = self._pending.pop(op, None)
        if previous is not None and not previous.done():
            previous.cancel()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[op] = future
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Timed out waiting for {op} acknowledgement") from None
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"{op} failed: {e}") from e
        finally:
            if self._pending.get(op) is future:
                self._pending.pop(op, None)

    async def _command(self, message: Dict[str, Any]) -> None:
        try:
            await self._send(message)
        except Exception as e:
            raise TransportError(f"Failed to send {message.get('type')}: {e}") from e

    def _on_send_done(self, task: asyncio.Task) -> None:
        self._send_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"[{self._session_id}] App message delivery failed: {exc}")


class RelayMediaSink:
    """MediaSink that tells the browser which remote tracks to play."""

    def __init__(self, send: Sender, session_id: str = "") -> None:
        self._send = send
        self._session_id = session_id
        self._tasks: "set[asyncio.Task]" = set()

    def attach(self, participant_id: str, audio_track: Any, video_track: Any) -> None:
        self._post({
            "type": "media.attach",
            "participant_id": participant_id,
            "audio_track": audio_track,
            "video_track": video_track,
        })

    def detach(self) -> None:
        self._post({"type": "media.detach"})

    def set_muted(self, muted: bool) -> None:
        self._post({"type": "media.muted", "muted": muted})

    def _post(self, message: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[{self._session_id}] No event loop — dropping {message['type']}")
            return
        task = loop.create_task(self._send(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
