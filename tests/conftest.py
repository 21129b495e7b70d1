import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from library_assistant.core.config import AssistantConfig
from library_assistant.core.interfaces import ANY_EVENT, ConversationProvider
from library_assistant.core.models import CatalogItem, ConversationHandle


def _book(title: str, author: str, subject: str, level: str, lo: int, hi: int, desc: str = "") -> CatalogItem:
    return CatalogItem(
        title=title,
        author=author,
        subject=subject,
        difficulty_level=level,
        target_age_min=lo,
        target_age_max=hi,
        description=desc or None,
    )


@pytest.fixture
def catalog() -> List[CatalogItem]:
    """Ten books: 4 STORY, 3 SCIENCE, 3 MATHS."""
    return [
        _book("The Lost Kitten", "Ana Reyes", "STORY", "beginner", 3, 6, "A kitten finds its way home"),
        _book("Forest Friends", "Tom Hale", "STORY", "beginner", 4, 7, "Animals of the forest work together"),
        _book("The Brave Little Boat", "Mia Chen", "STORY", "intermediate", 5, 8),
        _book("Moon Over the Sea", "Lena Park", "STORY", "advanced", 8, 12, "A quiet story about the tides"),
        _book("How Plants Grow", "Sam Okafor", "SCIENCE", "beginner", 4, 7, "Seeds, sun and water"),
        _book("Our Solar System", "Priya Nair", "SCIENCE", "intermediate", 7, 10, "Planets and moons"),
        _book("Amazing Animals", "Jo Baker", "SCIENCE", "beginner", 5, 9, "Animals from every continent"),
        _book("Counting to Ten", "Eve Small", "MATHS", "beginner", 3, 5),
        _book("Shapes Everywhere", "Dan Ruiz", "MATHS", "intermediate", 5, 8, "Circles, squares and more"),
        _book("Fractions Made Fun", "Kim Lee", "MATHS", "advanced", 9, 12),
    ]


@pytest.fixture
def credentials() -> AssistantConfig:
    return AssistantConfig(api_key="test-key", replica_id="r-test", persona_id="")


@pytest.fixture
def handle() -> ConversationHandle:
    return ConversationHandle(id="c123", join_url="https://tavus.daily.co/c123")


@pytest.fixture
def provider(handle: ConversationHandle) -> MagicMock:
    """Provider mock: create returns `handle`, end/get succeed."""
    m = MagicMock(spec=ConversationProvider)
    m.create = AsyncMock(return_value=handle)
    m.end = AsyncMock(return_value=None)
    m.get = AsyncMock(return_value=handle)
    return m


def playable_participant(audio: str = "playable", video: str = "playable", suffix: str = "") -> Dict[str, Any]:
    return {
        "session_id": "agent",
        "local": False,
        "tracks": {
            "audio": {"state": audio, "persistentTrack": f"audio{suffix}"},
            "video": {"state": video, "persistentTrack": f"video{suffix}"},
        },
    }


class FakeTransport:
    """In-memory TransportAdapter recording every call."""

    def __init__(self, join_error: Optional[Exception] = None) -> None:
        self.join_error = join_error
        self.join_gate: Optional[asyncio.Event] = None
        self.join_calls: List[str] = []
        self.leave_calls = 0
        self.app_messages: List[Any] = []
        self.local_audio: List[bool] = []
        self.local_video: List[bool] = []
        self.participant_snapshot: Dict[str, Dict[str, Any]] = {}
        self.handlers: Dict[str, List[Any]] = {}

    async def join(self, url: str, local_audio: bool = True, local_video: bool = False) -> None:
        self.join_calls.append(url)
        if self.join_gate is not None:
            await self.join_gate.wait()
        if self.join_error is not None:
            raise self.join_error

    async def leave(self) -> None:
        self.leave_calls += 1

    async def set_local_audio(self, enabled: bool) -> None:
        self.local_audio.append(enabled)

    async def set_local_video(self, enabled: bool) -> None:
        self.local_video.append(enabled)

    def send_app_message(self, payload: Dict[str, Any], target: str = "*") -> None:
        self.app_messages.append((payload, target))

    def participants(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.participant_snapshot)

    def on(self, event: str, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Any) -> None:
        if handler in self.handlers.get(event, []):
            self.handlers[event].remove(handler)

    def handler_count(self) -> int:
        return sum(len(h) for h in self.handlers.values())

    async def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self.handlers.get(event, [])) + list(self.handlers.get(ANY_EVENT, [])):
            result = handler(event, payload)
            if asyncio.iscoroutine(result):
                await result


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
