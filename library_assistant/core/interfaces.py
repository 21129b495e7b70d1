"""
Library Assistant — Layer Interfaces

Protocol definitions for the collaborators the session controller drives:
  1. Provider   — hosted agent conversations (create / get / end)
  2. Transport  — realtime call (join / leave / app messages / events)
  3. Media sink — local playback surface for the remote agent's tracks

Each layer communicates through these protocols — never by reaching
into another layer's internals.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from .models import CatalogSummary, ConversationHandle


# Transport event handler: handler(event_name, payload); may be a coroutine
EventHandler = Callable[[str, Any], Union[None, Awaitable[None]]]

# Transport event names
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_UPDATED = "participant-updated"
PARTICIPANT_LEFT = "participant-left"
TRACK_STARTED = "track-started"
APP_MESSAGE = "app-message"
RECEIVE_DATA = "receive-data"
ERROR = "error"
LEFT_MEETING = "left-meeting"
ANY_EVENT = "*"

TRANSPORT_EVENTS = (
    PARTICIPANT_JOINED,
    PARTICIPANT_UPDATED,
    PARTICIPANT_LEFT,
    TRACK_STARTED,
    APP_MESSAGE,
    RECEIVE_DATA,
    ERROR,
    LEFT_MEETING,
)


# ═══════════════════════════════════════════════════════════════════════════
# Provider — hosted agent conversations
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ConversationProvider(Protocol):
    """Creates and terminates hosted agent conversations. Raises ProviderError."""

    async def create(self, context: str, catalog_summary: CatalogSummary) -> ConversationHandle:
        ...

    async def end(self, conversation_id: str) -> None:
        ...

    async def get(self, conversation_id: str) -> ConversationHandle:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Transport — realtime audio/video/data channel
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class TransportAdapter(Protocol):
    """Joins a call and emits lifecycle/data events. Raises TransportError."""

    async def join(self, url: str, local_audio: bool = True, local_video: bool = False) -> None:
        ...

    async def leave(self) -> None:
        ...

    async def set_local_audio(self, enabled: bool) -> None:
        ...

    async def set_local_video(self, enabled: bool) -> None:
        ...

    def send_app_message(self, payload: Dict[str, Any], target: str = "*") -> None:
        """Fire-and-forget outbound message to the call's participants."""
        ...

    def participants(self) -> Dict[str, Dict[str, Any]]:
        """
        Snapshot keyed by participant id ("local" for the user). Each value
        carries {"tracks": {"audio": {"state", "track"}, "video": {...}}}.
        """
        ...

    def on(self, event: str, handler: EventHandler) -> None:
        ...

    def off(self, event: str, handler: EventHandler) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Media sink — local playback of the remote agent
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class MediaSink(Protocol):
    """One local surface that plays a single audio+video pair."""

    def attach(self, participant_id: str, audio_track: Any, video_track: Any) -> None:
        ...

    def detach(self) -> None:
        ...

    def set_muted(self, muted: bool) -> None:
        ...


class NullMediaSink:
    """Sink used when the host has no local playback surface."""

    def __init__(self) -> None:
        self.participant_id: Optional[str] = None
        self.muted = False

    def attach(self, participant_id: str, audio_track: Any, video_track: Any) -> None:
        self.participant_id = participant_id

    def detach(self) -> None:
        self.participant_id = None

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
