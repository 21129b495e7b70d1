from unittest.mock import AsyncMock, MagicMock

import pytest

from library_assistant.core.models import AgeRange, CanonicalToolCall, FilterCriteria
from library_assistant.processing.dispatcher import (
    ToolCallDispatcher,
    match_age_range,
    match_subject,
    recommend,
    search_catalog,
)


@pytest.fixture
def on_filter() -> MagicMock:
    return MagicMock(return_value=None)


@pytest.fixture
def on_recommend() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def dispatcher(catalog, on_filter, on_recommend) -> ToolCallDispatcher:
    return ToolCallDispatcher(catalog, on_filter_change=on_filter, on_book_recommendation=on_recommend)


# ── Pure queries ────────────────────────────────────────────────────────


def test_match_subject_and_all_sentinel(catalog) -> None:
    assert len(match_subject(catalog, "SCIENCE")) == 3
    assert len(match_subject(catalog, "ALL")) == 10
    assert match_subject(catalog, "science") == []


def test_search_is_case_insensitive_over_title_author_description(catalog) -> None:
    assert [b.title for b in search_catalog(catalog, "KITTEN")] == ["The Lost Kitten"]
    assert [b.title for b in search_catalog(catalog, "priya")] == ["Our Solar System"]
    assert len(search_catalog(catalog, "animals")) == 2
    assert search_catalog(catalog, "dragon") == []


def test_age_range_overlap_is_inclusive(catalog) -> None:
    titles = {b.title for b in match_age_range(catalog, 11, 12)}
    assert titles == {"Moon Over the Sea", "Fractions Made Fun"}
    # Touching an edge counts
    assert "Counting to Ten" in {b.title for b in match_age_range(catalog, 5, 5)}
    assert match_age_range(catalog, 13, 15) == []


def test_recommend_matches_subject_and_caps(catalog) -> None:
    assert len(recommend(catalog, "story", limit=6)) == 4
    assert len(recommend(catalog, "e", limit=6)) == 6


# ── Dispatch ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_filter_by_subject(dispatcher, on_filter) -> None:
    call = CanonicalToolCall("filter_books_by_subject", {"subject": "SCIENCE"})
    result = await dispatcher.dispatch(call)

    assert result.ok
    assert result.match_count == 3
    assert result.message == "Showing 3 SCIENCE books from our catalog"
    on_filter.assert_called_once_with(FilterCriteria(selected_subject="SCIENCE"))


@pytest.mark.asyncio
async def test_search_with_no_matches_still_filters(dispatcher, on_filter) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall("search_books", {"searchTerm": "dragon"}))

    assert result.ok
    assert result.match_count == 0
    assert result.message == 'Found 0 "dragon" books'
    on_filter.assert_called_once_with(FilterCriteria(search_term="dragon"))


@pytest.mark.asyncio
async def test_filter_by_difficulty(dispatcher, on_filter) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall("filter_books_by_difficulty", {"difficulty": "beginner"}))

    assert result.match_count == 5
    on_filter.assert_called_once_with(FilterCriteria(selected_difficulty="beginner"))


@pytest.mark.asyncio
async def test_filter_by_age_accepts_numeric_strings(dispatcher, on_filter) -> None:
    result = await dispatcher.dispatch(
        CanonicalToolCall("filter_books_by_age", {"minAge": "11", "maxAge": 12}),
    )

    assert result.ok
    assert result.match_count == 2
    assert result.message == "Showing 2 books for ages 11-12"
    on_filter.assert_called_once_with(FilterCriteria(age_range=AgeRange(min=11, max=12)))


@pytest.mark.asyncio
async def test_recommend_books_calls_recommendation_callback(dispatcher, on_recommend, on_filter, catalog) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall("recommend_books", {"preferences": "animals"}))

    assert result.message == "Found 2 recommendations"
    on_recommend.assert_awaited_once()
    books = on_recommend.await_args.args[0]
    assert {b.title for b in books} == {"Forest Friends", "Amazing Animals"}
    on_filter.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_action_is_recorded_not_executed(dispatcher, on_filter) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall("delete_catalog", {}))

    assert result.outcome == "unknown_action"
    assert result.message == "Unknown action: delete_catalog"
    assert dispatcher.last_call.rendered_call == "delete_catalog({})"
    on_filter.assert_not_called()


@pytest.mark.parametrize("name, args", [
    ("filter_books_by_subject", {}),
    ("filter_books_by_subject", {"subject": 7}),
    ("search_books", {"searchTerm": "   "}),
    ("filter_books_by_age", {"minAge": "young", "maxAge": 8}),
    ("filter_books_by_age", {"minAge": 9, "maxAge": 4}),
    ("recommend_books", {"preferences": None}),
])
@pytest.mark.asyncio
async def test_malformed_arguments_are_contained(dispatcher, on_filter, name, args) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall(name, args))

    assert result.outcome == "dispatch_error"
    assert result.message.startswith(f"Error executing action {name}")
    on_filter.assert_not_called()
    assert len(dispatcher.history) == 1


@pytest.mark.asyncio
async def test_callback_failure_is_contained(catalog) -> None:
    def boom(criteria):
        raise RuntimeError("ui gone")

    dispatcher = ToolCallDispatcher(catalog, on_filter_change=boom)
    result = await dispatcher.dispatch(CanonicalToolCall("search_books", {"searchTerm": "moon"}))

    assert result.outcome == "dispatch_error"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(dispatcher, on_filter) -> None:
    call = CanonicalToolCall("filter_books_by_subject", {"subject": "MATHS"})

    first = await dispatcher.dispatch(call)
    second = await dispatcher.dispatch(call)

    assert first.ok
    assert second.outcome == "duplicate"
    assert on_filter.call_count == 1
    assert len(dispatcher.history) == 1


@pytest.mark.asyncio
async def test_equal_calls_with_distinct_ids_both_run(dispatcher, on_filter) -> None:
    await dispatcher.dispatch(CanonicalToolCall("filter_books_by_subject", {"subject": "MATHS"}))
    await dispatcher.dispatch(CanonicalToolCall("filter_books_by_subject", {"subject": "MATHS"}))

    assert on_filter.call_count == 2


@pytest.mark.asyncio
async def test_history_keeps_last_five(dispatcher) -> None:
    terms = ["a", "b", "c", "d", "e", "f", "g"]
    for term in terms:
        await dispatcher.dispatch(CanonicalToolCall("search_books", {"searchTerm": term}))

    history = dispatcher.history
    assert len(history) == 5
    assert [r.rendered_call for r in history] == [
        f'search_books({{"searchTerm": "{t}"}})' for t in terms[2:]
    ]
    assert dispatcher.last_call == history[-1]


@pytest.mark.asyncio
async def test_recommend_with_no_matches_sends_empty_list(dispatcher, on_recommend) -> None:
    result = await dispatcher.dispatch(CanonicalToolCall("recommend_books", {"preferences": "dragon"}))

    assert result.ok
    assert result.message == "Found 0 recommendations"
    on_recommend.assert_awaited_once_with([])
