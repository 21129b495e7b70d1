import pytest

from library_assistant.core.config import TimeBudgetConfig
from library_assistant.processing.auditor import ResponseAuditor, ResponseVerdict
from library_assistant.processing.context import (
    build_conversation_context,
    build_custom_greeting,
    describe_item,
    summarize_catalog,
)


def test_summarize_catalog_counts_subjects(catalog) -> None:
    summary = summarize_catalog(catalog)

    assert summary.total == 10
    assert summary.subject_counts == {"STORY": 4, "SCIENCE": 3, "MATHS": 3}
    assert summary.subject_summary() == "STORY: 4 books, SCIENCE: 3 books, MATHS: 3 books"
    assert summary.lines[0] == describe_item(catalog[0])


def test_describe_item(catalog) -> None:
    assert describe_item(catalog[0]) == '- "The Lost Kitten" by Ana Reyes (STORY, beginner, ages 3-6)'


def test_context_carries_budget_and_catalog(catalog) -> None:
    context = build_conversation_context(summarize_catalog(catalog), TimeBudgetConfig())

    assert "exactly 1 minute" in context
    assert "At 45 seconds" in context
    assert "At 55 seconds" in context
    assert "Total books: 10" in context
    assert "ONLY mention books from the above list" in context
    for book in catalog:
        assert book.title in context


def test_context_follows_custom_budget(catalog) -> None:
    budget = TimeBudgetConfig(soft_warning_at=100, hard_warning_at=110, session_budget=120)
    context = build_conversation_context(summarize_catalog(catalog), budget)

    assert "exactly 2 minutes" in context
    assert "At 100 seconds" in context


def test_empty_catalog_context() -> None:
    context = build_conversation_context(summarize_catalog([]))
    assert "(no books available)" in context
    assert "collection of 0 books" in build_custom_greeting(summarize_catalog([]))


@pytest.mark.parametrize("speech, verdict", [
    ("We have a lovely book called Forest Friends!", ResponseVerdict.NATURAL),
    ("Have you read The Tale of Peter Rabbit?", ResponseVerdict.OFF_CATALOG),
    ("Let me call filter_books_by_subject for you", ResponseVerdict.FUNCTION_LEAK),
    ('search_books {"searchTerm": "moon"}', ResponseVerdict.FUNCTION_LEAK),
])
def test_auditor_verdicts(speech: str, verdict: ResponseVerdict) -> None:
    assert ResponseAuditor().audit(speech) == verdict


def test_auditor_counts() -> None:
    auditor = ResponseAuditor(external_markers=["Narnia"])
    auditor.audit("Try Narnia")
    auditor.audit("Try Our Solar System")
    auditor.audit("recommend_books")

    assert (auditor.off_catalog, auditor.natural, auditor.leaks) == (1, 1, 1)
