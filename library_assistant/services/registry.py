"""
Library Assistant — Session Registry

Maps session_id → SessionController. Single event loop, no locking.
Kept apart from the controller so the server owns lifetimes, not sessions.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..core.interfaces import ConversationProvider, MediaSink, TransportAdapter
from .session_controller import SessionController

logger = logging.getLogger("library_assistant.registry")


class SessionRegistry:
    """Maps session_id → SessionController."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionController] = {}

    def create(
        self,
        session_id: str,
        provider: ConversationProvider,
        transport: TransportAdapter,
        media_sink: Optional[MediaSink] = None,
        on_filter_change: Optional[Callable] = None,
        on_book_recommendation: Optional[Callable] = None,
        on_status: Optional[Callable] = None,
    ) -> SessionController:
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} already registered")

        controller = SessionController(
            session_id=session_id,
            provider=provider,
            transport=transport,
            media_sink=media_sink,
            on_filter_change=on_filter_change,
            on_book_recommendation=on_book_recommendation,
            on_status=on_status,
        )
        self._sessions[session_id] = controller
        logger.info(f"SessionRegistry: created {session_id} (total: {len(self._sessions)})")
        return controller

    async def stop_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        controller = self._sessions.pop(session_id, None)
        if controller:
            summary = await controller.stop()
            logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._sessions)})")
            return summary
        return None

    async def stop_all(self) -> None:
        for sid in list(self._sessions.keys()):
            await self.stop_session(sid)

    def get(self, session_id: str) -> Optional[SessionController]:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def all_sessions(self) -> Dict[str, SessionController]:
        return dict(self._sessions)
