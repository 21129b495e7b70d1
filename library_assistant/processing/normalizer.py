"""
Library Assistant — Event Normalizer

================================================================================
RAW TRANSPORT EVENT → ZERO-OR-ONE CANONICAL TOOL CALL
================================================================================

The realtime channel carries vendor-defined events with no fixed schema.
A tool call can show up in any of these shapes:

  1. direct      {function_name, arguments}
  2. properties  {properties: {function_name, arguments}}
  3. tool_calls  {tool_calls: [{function: {name, arguments}}]}      (first only)
  4. tagged      {event_type: "conversation.tool_call", properties: {...}}
  5. choices     {choices: [{message: {tool_calls: [...]}}]}
  6. function    {function: {name, arguments}}

Each strategy is a total function: record → Optional[CanonicalToolCall].
Strategies never raise; an unreadable shape is just "no match".
The event envelope is unwrapped first (data → event → payload → message)
and the strategies run over each candidate record in turn.

When nothing matches and the event is a user utterance, a keyword
fallback may synthesize a call. It is a heuristic and is tagged
source="inferred" so nobody mistakes it for agent intent.
================================================================================
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.config import dispatch_cfg
from ..core.errors import ParseError
from ..core.models import CanonicalToolCall, ReplicaUtterance

logger = logging.getLogger("library_assistant.normalizer")

Strategy = Callable[[Mapping[str, Any]], Optional[CanonicalToolCall]]

# Envelope keys tried after the event itself (order matters)
_ENVELOPE_KEYS = ("payload", "message")

# Event-type tags that mark a tool/function call wrapper
_TOOL_EVENT_TYPES = frozenset({
    "conversation.tool_call",
    "conversation.toolcall",
    "conversation.llm.function_call",
})

UTTERANCE_EVENT_TYPE = "conversation.utterance"
RESPOND_EVENT_TYPE = "conversation.respond"

# Recursion guard for tagged wrappers nesting further wrappers
_MAX_DEPTH = 3

# Keyword fallback: first matching row wins
KEYWORD_RULES: Tuple[Tuple[Tuple[str, ...], str, Dict[str, Any]], ...] = (
    (("story", "stories"), "filter_books_by_subject", {"subject": "STORY"}),
    (("science",), "filter_books_by_subject", {"subject": "SCIENCE"}),
    (("math",), "filter_books_by_subject", {"subject": "MATHS"}),
    (("animal", "rabbit"), "search_books", {"searchTerm": "animals"}),
    (("easy", "beginner"), "filter_books_by_difficulty", {"difficulty": "beginner"}),
)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _as_record(value: Any) -> Optional[Mapping[str, Any]]:
    return value if isinstance(value, Mapping) else None


def _first(value: Any) -> Any:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)) and value:
        return value[0]
    return None


def _coerce_arguments(raw: Any, allow_missing: bool = True) -> Dict[str, Any]:
    """Mapping → ordered copy; JSON object string → dict. Raises ParseError."""
    if raw is None:
        if allow_missing:
            return {}
        raise ParseError("arguments missing")
    if isinstance(raw, Mapping):
        return {str(k): v for k, v in raw.items()}
    if isinstance(raw, (str, bytes)):
        try:
            text = raw.decode() if isinstance(raw, bytes) else raw
        except UnicodeDecodeError as e:
            raise ParseError(f"arguments are not valid UTF-8: {e}") from e
        if not text.strip():
            return {}
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"arguments are not valid JSON: {e}") from e
        if not isinstance(decoded, dict):
            raise ParseError(f"arguments decode to {type(decoded).__name__}, expected object")
        return decoded
    raise ParseError(f"unsupported arguments type: {type(raw).__name__}")


def _build(name: Any, raw_args: Any, allow_missing: bool = True) -> Optional[CanonicalToolCall]:
    if not isinstance(name, str) or not name.strip():
        return None
    return CanonicalToolCall(
        function_name=name.strip(),
        arguments=_coerce_arguments(raw_args, allow_missing=allow_missing),
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def extract_direct(data: Mapping[str, Any]) -> Optional[CanonicalToolCall]:
    """1. {function_name, arguments} at the top level."""
    if "function_name" not in data or "arguments" not in data:
        return None
    return _build(data["function_name"], data["arguments"], allow_missing=False)


def extract_properties(data: Mapping[str, Any]) -> Optional[CanonicalToolCall]:
    """2. {properties: {function_name, arguments}}."""
    props = _as_record(data.get("properties"))
    if props is None or "function_name" not in props:
        return None
    return _build(props["function_name"], props.get("arguments"))


def extract_tool_calls(data: Mapping[str, Any]) -> Optional[CanonicalToolCall]:
    """3. OpenAI-style tool_calls array; only the first call is used."""
    call = _as_record(_first(data.get("tool_calls")))
    if call is None:
        return None
    fn = _as_record(call.get("function"))
    if fn is None:
        return None
    return _build(fn.get("name"), fn.get("arguments"))


def _is_tool_tagged(data: Mapping[str, Any]) -> bool:
    event_type = data.get("event_type")
    if isinstance(event_type, str):
        if event_type in _TOOL_EVENT_TYPES:
            return True
        if "tool" in event_type or "function" in event_type:
            return True
    return data.get("message_type") == "conversation"


def extract_tagged(data: Mapping[str, Any], depth: int = 0) -> Optional[CanonicalToolCall]:
    """4. Tool/function event-type tag with the descriptor under properties."""
    if not _is_tool_tagged(data):
        return None
    props = _as_record(data.get("properties"))
    if props is None:
        return None

    found = extract_properties(data)
    if found is not None:
        return found
    # Provider tool-call events use `name` rather than `function_name`
    if "name" in props:
        found = _build(props.get("name"), props.get("arguments"))
        if found is not None:
            return found
    if depth < _MAX_DEPTH:
        return _run_strategies(props, depth + 1)
    return None


def extract_choices(data: Mapping[str, Any]) -> Optional[CanonicalToolCall]:
    """5. GPT-style response: choices[0].message.tool_calls."""
    choice = _as_record(_first(data.get("choices")))
    if choice is None:
        return None
    message = _as_record(choice.get("message"))
    if message is None or "tool_calls" not in message:
        return None
    return extract_tool_calls({"tool_calls": message["tool_calls"]})


def extract_function(data: Mapping[str, Any]) -> Optional[CanonicalToolCall]:
    """6. Bare {function: {name, arguments}}."""
    fn = _as_record(data.get("function"))
    if fn is None or "name" not in fn:
        return None
    return _build(fn.get("name"), fn.get("arguments"))


STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("direct", extract_direct),
    ("properties", extract_properties),
    ("tool_calls", extract_tool_calls),
    ("tagged", extract_tagged),
    ("choices", extract_choices),
    ("function", extract_function),
)


def _run_strategies(data: Mapping[str, Any], depth: int = 0) -> Optional[CanonicalToolCall]:
    for name, strategy in STRATEGIES:
        try:
            if strategy is extract_tagged:
                found = extract_tagged(data, depth)
            else:
                found = strategy(data)
        except ParseError as e:
            logger.debug(f"Strategy '{name}' matched but arguments unreadable: {e}")
            continue
        if found is not None:
            logger.debug(f"Strategy '{name}' extracted {found.function_name}")
            return found
    return None


# ---------------------------------------------------------------------------
# Envelope + utterance helpers
# ---------------------------------------------------------------------------

def candidate_records(event: Any) -> List[Mapping[str, Any]]:
    """Records worth inspecting, in priority order: data, event, payload, message."""
    event_record = _as_record(event)
    if event_record is None:
        return []
    candidates: List[Mapping[str, Any]] = []
    data = _as_record(event_record.get("data"))
    if data is not None:
        candidates.append(data)
    candidates.append(event_record)
    for key in _ENVELOPE_KEYS:
        nested = _as_record(event_record.get(key))
        if nested is not None:
            candidates.append(nested)
    return candidates


def extract_utterance(event: Any) -> Optional[ReplicaUtterance]:
    """Speech carried by a conversation.utterance event, if any."""
    for record in candidate_records(event):
        if record.get("event_type") != UTTERANCE_EVENT_TYPE:
            continue
        props = _as_record(record.get("properties"))
        if props is None:
            continue
        speech = props.get("speech")
        if isinstance(speech, str) and speech.strip():
            return ReplicaUtterance(role=str(props.get("role", "")), speech=speech)
    return None


def infer_from_speech(speech: str) -> Optional[CanonicalToolCall]:
    """Best-effort keyword match over user speech. May misfire."""
    lowered = speech.lower()
    for keywords, function_name, arguments in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return CanonicalToolCall(
                function_name=function_name,
                arguments=arguments,
                source="inferred",
            )
    return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class EventNormalizer:
    """
    Turns one raw transport event into a CanonicalToolCall or None.

    Usage:
        normalizer = EventNormalizer()
        call = normalizer.normalize(event)   # None for non-tool traffic
    """

    def __init__(self, enable_keyword_fallback: bool = dispatch_cfg.enable_keyword_fallback) -> None:
        self._enable_keyword_fallback = enable_keyword_fallback
        self.events_seen = 0
        self.events_matched = 0
        self.events_inferred = 0

    @property
    def keyword_fallback_enabled(self) -> bool:
        return self._enable_keyword_fallback

    def normalize(self, event: Any) -> Optional[CanonicalToolCall]:
        self.events_seen += 1

        for record in candidate_records(event):
            if record.get("event_type") == RESPOND_EVENT_TYPE:
                # Echo of our own escalation instruction
                logger.debug("Escalation instruction echoed back by the call")
                return None
            found = _run_strategies(record)
            if found is not None:
                self.events_matched += 1
                return found

        if self._enable_keyword_fallback:
            utterance = extract_utterance(event)
            if utterance is not None and utterance.role == "user":
                inferred = infer_from_speech(utterance.speech)
                if inferred is not None:
                    self.events_inferred += 1
                    logger.info(
                        f"Inferred {inferred.function_name}{dict(inferred.arguments)} "
                        f"from user speech: {utterance.speech[:80]!r}"
                    )
                    return inferred

        logger.debug(f"No tool call in event (keys={_describe(event)})")
        return None


def _describe(event: Any) -> str:
    record = _as_record(event)
    if record is None:
        return type(event).__name__
    return ",".join(sorted(str(k) for k in record.keys()))
