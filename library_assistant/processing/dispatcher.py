"""
Library Assistant — Tool Call Dispatcher

Validates a CanonicalToolCall against the fixed action set and runs the
matching catalog query. The UI callbacks own the final filtering; the
dispatcher only forwards criteria and computes match counts for the
status line.

Every call lands in a bounded history (last 5) and the "last call" slot.
Errors are contained per call — a bad call never touches session state.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from ..core.config import dispatch_cfg
from ..core.errors import DispatchError, UnknownActionError
from ..core.models import (
    AgeRange,
    CanonicalToolCall,
    CatalogItem,
    DispatchResult,
    FilterCriteria,
    ToolCallRecord,
)

logger = logging.getLogger("library_assistant.dispatcher")

ALL_SENTINEL = "ALL"

FILTER_BY_SUBJECT = "filter_books_by_subject"
FILTER_BY_DIFFICULTY = "filter_books_by_difficulty"
SEARCH_BOOKS = "search_books"
FILTER_BY_AGE = "filter_books_by_age"
RECOMMEND_BOOKS = "recommend_books"

KNOWN_ACTIONS = frozenset({
    FILTER_BY_SUBJECT,
    FILTER_BY_DIFFICULTY,
    SEARCH_BOOKS,
    FILTER_BY_AGE,
    RECOMMEND_BOOKS,
})

FilterCallback = Callable[[FilterCriteria], Any]
RecommendationCallback = Callable[[List[CatalogItem]], Any]


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

def _require_text(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise DispatchError(f"'{key}' must be a non-empty string, got {value!r}")
    return value


def _require_number(args: Mapping[str, Any], key: str) -> float:
    value = args.get(key)
    if isinstance(value, bool):
        raise DispatchError(f"'{key}' must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise DispatchError(f"'{key}' must be a number, got {value!r}") from None
    else:
        raise DispatchError(f"'{key}' must be a number, got {value!r}")
    if math.isnan(number):
        raise DispatchError(f"'{key}' must be a number, got NaN")
    return number


def _display_number(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()


# ---------------------------------------------------------------------------
# Catalog queries (pure)
# ---------------------------------------------------------------------------

def match_subject(catalog: List[CatalogItem], subject: str) -> List[CatalogItem]:
    return [b for b in catalog if subject == ALL_SENTINEL or b.subject == subject]


def match_difficulty(catalog: List[CatalogItem], difficulty: str) -> List[CatalogItem]:
    return [b for b in catalog if difficulty == ALL_SENTINEL or b.difficulty_level == difficulty]


def search_catalog(catalog: List[CatalogItem], term: str) -> List[CatalogItem]:
    needle = term.lower()
    return [
        b for b in catalog
        if _contains(b.title, needle)
        or _contains(b.author, needle)
        or _contains(b.description, needle)
    ]


def match_age_range(catalog: List[CatalogItem], min_age: float, max_age: float) -> List[CatalogItem]:
    # Inclusive interval overlap
    return [b for b in catalog if b.target_age_min <= max_age and b.target_age_max >= min_age]


def recommend(catalog: List[CatalogItem], preferences: str, limit: int) -> List[CatalogItem]:
    needle = preferences.lower()
    matches = [
        b for b in catalog
        if _contains(b.title, needle)
        or _contains(b.description, needle)
        or _contains(b.subject, needle)
        or _contains(b.author, needle)
    ]
    return matches[:limit]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ToolCallDispatcher:
    """
    Executes canonical tool calls against an in-memory catalog.

    Usage:
        dispatcher = ToolCallDispatcher(books, on_filter_change=..., on_book_recommendation=...)
        result = await dispatcher.dispatch(call)
        result.message   # human-readable status line
    """

    def __init__(
        self,
        catalog: List[CatalogItem],
        on_filter_change: Optional[FilterCallback] = None,
        on_book_recommendation: Optional[RecommendationCallback] = None,
        history_size: int = dispatch_cfg.history_size,
        recommendation_limit: int = dispatch_cfg.recommendation_limit,
        dispatched_id_window: int = dispatch_cfg.dispatched_id_window,
    ) -> None:
        self._catalog: List[CatalogItem] = list(catalog)
        self._on_filter_change = on_filter_change
        self._on_book_recommendation = on_book_recommendation
        self._recommendation_limit = recommendation_limit

        self._history: Deque[ToolCallRecord] = deque(maxlen=history_size)
        self._last_call: Optional[ToolCallRecord] = None
        self._dispatched_ids: "OrderedDict[str, None]" = OrderedDict()
        self._dispatched_id_window = dispatched_id_window

        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Awaitable[Tuple[int, str]]]] = {
            FILTER_BY_SUBJECT: self._filter_by_subject,
            FILTER_BY_DIFFICULTY: self._filter_by_difficulty,
            SEARCH_BOOKS: self._search_books,
            FILTER_BY_AGE: self._filter_by_age,
            RECOMMEND_BOOKS: self._recommend_books,
        }

    @property
    def catalog(self) -> List[CatalogItem]:
        return list(self._catalog)

    @property
    def history(self) -> List[ToolCallRecord]:
        return list(self._history)

    @property
    def last_call(self) -> Optional[ToolCallRecord]:
        return self._last_call

    def already_dispatched(self, call: CanonicalToolCall) -> bool:
        return call.call_id in self._dispatched_ids

    # ── Public API ──────────────────────────────────────────────────────

    async def dispatch(self, call: CanonicalToolCall) -> DispatchResult:
        name = call.function_name

        if self.already_dispatched(call):
            logger.warning(f"Skipping duplicate delivery of {name} (call_id={call.call_id})")
            return DispatchResult(
                function_name=name,
                outcome="duplicate",
                message=f"Already handled {name}",
            )
        self._remember(call)

        record = ToolCallRecord(rendered_call=call.render())
        self._history.append(record)
        self._last_call = record
        logger.info(f"Executing tool call: {record.rendered_call} (source={call.source})")

        try:
            handler = self._handlers.get(name)
            if handler is None:
                raise UnknownActionError(name)
            count, message = await handler(call.arguments)
        except UnknownActionError as e:
            logger.info(f"Unresolved action: {e.function_name}")
            return DispatchResult(
                function_name=name,
                outcome="unknown_action",
                message=f"Unknown action: {name}",
            )
        except DispatchError as e:
            logger.warning(f"Malformed arguments for {name}: {e}")
            return DispatchResult(
                function_name=name,
                outcome="dispatch_error",
                message=f"Error executing action {name}: {e}",
            )
        except Exception as e:
            logger.error(f"Tool call {name} failed: {e}", exc_info=True)
            return DispatchResult(
                function_name=name,
                outcome="dispatch_error",
                message=f"Error executing action {name}",
            )

        return DispatchResult(function_name=name, outcome="ok", match_count=count, message=message)

    # ── Action handlers ─────────────────────────────────────────────────

    async def _filter_by_subject(self, args: Mapping[str, Any]) -> Tuple[int, str]:
        subject = _require_text(args, "subject")
        matches = match_subject(self._catalog, subject)
        logger.info(f"Subject '{subject}': {len(matches)} of {len(self._catalog)} books")
        await self._emit(self._on_filter_change, FilterCriteria(selected_subject=subject))
        return len(matches), f"Showing {len(matches)} {subject} books from our catalog"

    async def _filter_by_difficulty(self, args: Mapping[str, Any]) -> Tuple[int, str]:
        difficulty = _require_text(args, "difficulty")
        matches = match_difficulty(self._catalog, difficulty)
        logger.info(f"Difficulty '{difficulty}': {len(matches)} of {len(self._catalog)} books")
        await self._emit(self._on_filter_change, FilterCriteria(selected_difficulty=difficulty))
        return len(matches), f"Showing {len(matches)} {difficulty} books"

    async def _search_books(self, args: Mapping[str, Any]) -> Tuple[int, str]:
        term = _require_text(args, "searchTerm")
        matches = search_catalog(self._catalog, term)
        logger.info(f"Search '{term}': {len(matches)} of {len(self._catalog)} books")
        await self._emit(self._on_filter_change, FilterCriteria(search_term=term))
        return len(matches), f'Found {len(matches)} "{term}" books'

    async def _filter_by_age(self, args: Mapping[str, Any]) -> Tuple[int, str]:
        min_age = _require_number(args, "minAge")
        max_age = _require_number(args, "maxAge")
        if min_age > max_age:
            raise DispatchError(f"minAge {min_age} is greater than maxAge {max_age}")
        matches = match_age_range(self._catalog, min_age, max_age)
        lo, hi = _display_number(min_age), _display_number(max_age)
        logger.info(f"Ages {lo}-{hi}: {len(matches)} of {len(self._catalog)} books")
        await self._emit(
            self._on_filter_change,
            FilterCriteria(age_range=AgeRange(min=lo, max=hi)),
        )
        return len(matches), f"Showing {len(matches)} books for ages {lo}-{hi}"

    async def _recommend_books(self, args: Mapping[str, Any]) -> Tuple[int, str]:
        preferences = _require_text(args, "preferences")
        picks = recommend(self._catalog, preferences, self._recommendation_limit)
        logger.info(f"Recommendations for '{preferences}': {len(picks)}")
        await self._emit(self._on_book_recommendation, picks)
        return len(picks), f"Found {len(picks)} recommendations"

    # ── Helpers ─────────────────────────────────────────────────────────

    def _remember(self, call: CanonicalToolCall) -> None:
        self._dispatched_ids[call.call_id] = None
        while len(self._dispatched_ids) > self._dispatched_id_window:
            self._dispatched_ids.popitem(last=False)

    @staticmethod
    async def _emit(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        cb = callback(*args)
        if asyncio.iscoroutine(cb):
            await cb
