"""
Library Assistant — Response Auditor

Classifies what the remote agent says out loud. The agent is told to stay
inside the catalog and never read out action names; this tracks how
often it manages to.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Optional, Tuple

from .dispatcher import KNOWN_ACTIONS

logger = logging.getLogger("library_assistant.auditor")

# Phrases that point at books outside the catalog
DEFAULT_EXTERNAL_MARKERS: Tuple[str, ...] = (
    "Peter Rabbit",
    "Runaway Bunny",
    "Tale of",
    "classic story",
    "famous book",
)

_LEAK_MARKERS: Tuple[str, ...] = ("filter_books_by_", "{", "}") + tuple(sorted(KNOWN_ACTIONS))


class ResponseVerdict(str, Enum):
    NATURAL = "natural"                # On-catalog, no leaked plumbing
    OFF_CATALOG = "off_catalog"        # Mentions books we don't carry
    FUNCTION_LEAK = "function_leak"    # Read out an action name or JSON


class ResponseAuditor:
    def __init__(self, external_markers: Optional[Iterable[str]] = None) -> None:
        self._external_markers = tuple(external_markers or DEFAULT_EXTERNAL_MARKERS)
        self.natural = 0
        self.off_catalog = 0
        self.leaks = 0

    def audit(self, speech: str) -> ResponseVerdict:
        if any(marker in speech for marker in self._external_markers):
            self.off_catalog += 1
            logger.warning(f"Agent mentioned a book outside the catalog: {speech[:80]!r}")
            return ResponseVerdict.OFF_CATALOG
        if any(marker in speech for marker in _LEAK_MARKERS):
            self.leaks += 1
            logger.warning(f"Agent spoke a function name: {speech[:80]!r}")
            return ResponseVerdict.FUNCTION_LEAK
        self.natural += 1
        return ResponseVerdict.NATURAL
