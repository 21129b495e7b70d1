"""
Library Assistant — Data Models

Dataclasses for every piece of data flowing through the system.
Catalog items are read-only reference data; tool calls are immutable
once the normalizer builds them.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogItem:
    title: str
    author: str
    subject: str                  # e.g. "STORY" | "SCIENCE" | "MATHS"
    difficulty_level: str         # e.g. "beginner" | "intermediate" | "advanced"
    target_age_min: int
    target_age_max: int
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CatalogItem":
        """Build from the UI's book record (snake_case or camelCase keys)."""
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        return cls(
            title=str(pick("title", default="")),
            author=str(pick("author", default="")),
            subject=str(pick("subject", default="")),
            difficulty_level=str(pick("difficulty_level", "difficultyLevel", default="")),
            target_age_min=int(pick("target_age_min", "targetAgeMin", default=0)),
            target_age_max=int(pick("target_age_max", "targetAgeMax", default=0)),
            description=pick("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CatalogSummary:
    """Digest of the catalog handed to the provider alongside the context."""
    total: int = 0
    subject_counts: Dict[str, int] = field(default_factory=dict)
    lines: List[str] = field(default_factory=list)

    def subject_summary(self) -> str:
        return ", ".join(f"{subject}: {count} books" for subject, count in self.subject_counts.items())


# ---------------------------------------------------------------------------
# Conversation handle
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConversationHandle:
    id: str
    join_url: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ConversationHandle":
        created_raw = data.get("created_at")
        created_at = datetime.now(timezone.utc)
        if isinstance(created_raw, str) and created_raw:
            try:
                created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
            except ValueError:
                pass
        return cls(
            id=str(data["conversation_id"]),
            join_url=str(data["conversation_url"]),
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "join_url": self.join_url,
            "created_at": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalToolCall:
    """
    The single normalized tool-call shape every wire variant reduces to.

    `call_id` and `source` identify one particular delivery and are left
    out of equality: two encodings of the same call compare equal.
    """
    function_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)
    source: str = field(default="agent", compare=False)   # "agent" | "inferred"

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", MappingProxyType(dict(self.arguments)))

    def render(self) -> str:
        return f"{self.function_name}({json.dumps(dict(self.arguments))})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function_name": self.function_name,
            "arguments": dict(self.arguments),
            "call_id": self.call_id,
            "source": self.source,
        }


@dataclass(frozen=True)
class ToolCallRecord:
    rendered_call: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AgeRange:
    min: float
    max: float


@dataclass(frozen=True)
class FilterCriteria:
    """Partial filter update; the UI merges it into its own filter state."""
    search_term: Optional[str] = None
    selected_subject: Optional[str] = None
    selected_difficulty: Optional[str] = None
    age_range: Optional[AgeRange] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.search_term is not None:
            d["searchTerm"] = self.search_term
        if self.selected_subject is not None:
            d["selectedSubject"] = self.selected_subject
        if self.selected_difficulty is not None:
            d["selectedDifficulty"] = self.selected_difficulty
        if self.age_range is not None:
            d["ageRange"] = {"min": self.age_range.min, "max": self.age_range.max}
        return d


@dataclass(frozen=True)
class DispatchResult:
    function_name: str
    outcome: str = "ok"           # "ok" | "unknown_action" | "dispatch_error" | "duplicate"
    match_count: int = 0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReplicaUtterance:
    role: str = ""                # "user" | "replica"
    speech: str = ""


# ---------------------------------------------------------------------------
# Session telemetry
# ---------------------------------------------------------------------------

@dataclass
class SessionTelemetry:
    """Per-lifetime counters — never crashes the session."""
    session_id: str = ""
    conversation_id: str = ""
    events_received: int = 0
    events_dropped: int = 0
    tool_calls_dispatched: int = 0
    inferred_tool_calls: int = 0
    unknown_actions: int = 0
    dispatch_errors: int = 0
    duplicate_calls: int = 0
    escalations_sent: int = 0
    escalations_failed: int = 0
    natural_responses: int = 0
    off_catalog_responses: int = 0
    function_leaks: int = 0
    agent_ready: bool = False
    media_bound: bool = False
    session_state: str = "idle"
    failure_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
