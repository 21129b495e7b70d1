"""
Library Assistant — Conversation Context

Builds the instructions the hosted agent starts with: time awareness
derived from the budget, catalog-only rules, and the catalog listing.
"""

from __future__ import annotations

from typing import Dict, Iterable

from ..core.config import TimeBudgetConfig, budget_cfg
from ..core.models import CatalogItem, CatalogSummary


def describe_item(item: CatalogItem) -> str:
    return (
        f'- "{item.title}" by {item.author} '
        f"({item.subject}, {item.difficulty_level}, "
        f"ages {item.target_age_min}-{item.target_age_max})"
    )


def summarize_catalog(catalog: Iterable[CatalogItem]) -> CatalogSummary:
    counts: Dict[str, int] = {}
    lines = []
    total = 0
    for item in catalog:
        total += 1
        counts[item.subject] = counts.get(item.subject, 0) + 1
        lines.append(describe_item(item))
    return CatalogSummary(total=total, subject_counts=counts, lines=lines)


def _fmt_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" + ("" if minutes == 1 else "s")
    return f"{seconds:g} seconds"


def build_conversation_context(
    summary: CatalogSummary,
    budget: TimeBudgetConfig = budget_cfg,
) -> str:
    book_list = "\n".join(summary.lines) if summary.lines else "- (no books available)"
    return f"""You are a warm, friendly library assistant helping users find books from our catalog of {summary.total} books.

TIME AWARENESS:
This conversation will last exactly {_fmt_duration(budget.session_budget)}. You must:
- At {budget.soft_warning_at:g} seconds: Begin naturally transitioning toward closure while still being helpful
- At {budget.hard_warning_at:g} seconds: Give a warm, natural closing like "I hope you find something wonderful to read! Feel free to come back anytime for more book recommendations."

CRITICAL RULES:
1. NEVER abruptly cut off mid-sentence
2. Always complete your current thought before transitioning to closure
3. Make the ending feel natural, not forced; mention you need to attend to another call
4. If asked a question near the end, give a brief but complete answer before closing

AVAILABLE BOOKS IN OUR LIBRARY:
{book_list}

LIBRARY SUMMARY:
- Total books: {summary.total}
- Subjects available: {summary.subject_summary()}

CATALOG RULES:
1. ONLY mention books from the above list
2. NEVER suggest books not in this catalog
3. If a user asks for something we don't have, say "We don't have that specific book, but here's what we do have..." and suggest from the available list
4. Use tools to filter the ACTUAL available books
5. Always respond naturally without mentioning function names
6. When asked to wrap up, finish your current response quickly and politely

Example conversations:
User: "I want animal books"
You: "Let me check what animal books we have..." [use search_books, then mention only actual results]

User: "Do you have Peter Rabbit?"
You: "I don't see that specific book in our collection, but I found some other wonderful animal stories..." [mention actual books]

Always be helpful and suggest alternatives from what we actually have!"""


def build_custom_greeting(summary: CatalogSummary) -> str:
    return (
        "Hello! I'm your interactive library assistant. I can help you find books "
        f"from our collection of {summary.total} books. "
        "What kind of books are you interested in today?"
    )
