"""
Library Assistant — Structured Latency Tracer

Records wall-clock timestamps for critical milestones:
  start_requested → conversation_created → transport_joined → agent_ready → first_tool_call

Computes and logs latency deltas.  This is the single source of truth
for latency diagnostics — no ad-hoc timing elsewhere.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("library_assistant.latency")

_MILESTONES = (
    "start_requested",
    "conversation_created",
    "transport_joined",
    "agent_ready",
    "first_tool_call",
)


@dataclass
class LatencyTrace:
    """Record of session latency milestones (wall-clock seconds, 0 = not reached)."""

    session_id: str = ""

    start_requested: float = 0.0
    conversation_created: float = 0.0
    transport_joined: float = 0.0
    agent_ready: float = 0.0
    first_tool_call: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "session_id": self.session_id,
        }
        # Only include milestones that have been recorded
        for name in _MILESTONES:
            ts = getattr(self, name)
            if ts > 0:
                d[name] = ts
        d["deltas"] = self.deltas()
        return d

    def deltas(self) -> Dict[str, Optional[float]]:
        """Compute latency deltas between milestones (milliseconds)."""
        def _delta(a: float, b: float) -> Optional[float]:
            if a > 0 and b > 0:
                return round((b - a) * 1000, 1)
            return None

        return {
            "create_ms": _delta(self.start_requested, self.conversation_created),
            "join_ms": _delta(self.conversation_created, self.transport_joined),
            "join_to_agent_ready_ms": _delta(self.transport_joined, self.agent_ready),
            "join_to_first_tool_call_ms": _delta(self.transport_joined, self.first_tool_call),
            "start_to_agent_ready_ms": _delta(self.start_requested, self.agent_ready),
        }


class LatencyTracer:
    """
    Mutable tracer that records milestones once each and logs them.

    Usage:
        tracer = LatencyTracer("session-abc")
        tracer.mark("start_requested")
        tracer.mark("conversation_created")
    """

    def __init__(self, session_id: str) -> None:
        self._trace = LatencyTrace(session_id=session_id)

    @property
    def trace(self) -> LatencyTrace:
        return self._trace

    def mark(self, milestone: str) -> None:
        if milestone not in _MILESTONES:
            raise ValueError(f"Unknown latency milestone: {milestone}")
        if getattr(self._trace, milestone) > 0:
            return  # Already marked
        setattr(self._trace, milestone, time.time())
        logger.info(f"[{self._trace.session_id}] LATENCY {milestone}")

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()
