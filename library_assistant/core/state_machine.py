"""
Library Assistant — Session State Machine

Enforces the lifecycle: IDLE → CONNECTING → CONNECTED → AGENT_READY → ENDED.
Any live state may drop to FAILED (or ENDED on stop). ENDED and FAILED are
absorbing: leaving them takes a new state machine (a new session lifetime).
Every change of state goes through SessionStateMachine.transition(),
which refuses anything not listed in _TRANSITIONS and logs the rest.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

logger = logging.getLogger("library_assistant.state")


class SessionState(str, Enum):
    """Strict session lifecycle states."""
    IDLE = "idle"                  # Controller created, nothing allocated
    CONNECTING = "connecting"      # Conversation being created / call being joined
    CONNECTED = "connected"        # Call joined, tool calls live
    AGENT_READY = "agent_ready"    # Remote agent audio + video playable
    ENDED = "ended"                # Torn down normally
    FAILED = "failed"              # Unrecoverable error


# States in which a conversation handle and budget timers may exist
LIVE_STATES: FrozenSet[SessionState] = frozenset({
    SessionState.CONNECTING,
    SessionState.CONNECTED,
    SessionState.AGENT_READY,
})

TERMINAL_STATES: FrozenSet[SessionState] = frozenset({
    SessionState.ENDED,
    SessionState.FAILED,
})


# Legal state transitions
_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.IDLE:        {SessionState.CONNECTING},
    SessionState.CONNECTING:  {SessionState.CONNECTED, SessionState.ENDED, SessionState.FAILED},
    SessionState.CONNECTED:   {SessionState.AGENT_READY, SessionState.ENDED, SessionState.FAILED},
    SessionState.AGENT_READY: {SessionState.ENDED, SessionState.FAILED},
    SessionState.ENDED:       set(),
    SessionState.FAILED:      set(),
}


TransitionListener = Callable[[SessionState, SessionState, str], None]


@dataclass(frozen=True)
class StateChange:
    """One accepted transition."""
    source: SessionState
    target: SessionState
    reason: str
    at: float
    held_for_s: float       # Time spent in `source`

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["source"] = self.source.value
        d["target"] = self.target.value
        return d


class SessionStateMachine:
    """
    Single owner of a session's lifecycle state.

    Usage:
        sm = SessionStateMachine(on_transition=listener)
        sm.transition(SessionState.CONNECTING, reason="start requested")
        sm.transition(SessionState.IDLE)   # not in _TRANSITIONS → ValueError
    """

    def __init__(self, on_transition: Optional[TransitionListener] = None) -> None:
        self._state = SessionState.IDLE
        self._listener = on_transition
        self._changes: List[StateChange] = []
        self._since = time.monotonic()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reason(self) -> str:
        """Reason given for the most recent transition."""
        return self._changes[-1].reason if self._changes else ""

    @property
    def is_live(self) -> bool:
        return self._state in LIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> List[StateChange]:
        return list(self._changes)

    def can_transition(self, target: SessionState) -> bool:
        return target in _TRANSITIONS[self._state]

    def transition(self, target: SessionState, reason: str = "") -> None:
        """Move to `target`. Same state is a no-op; anything unlisted raises ValueError."""
        source = self._state
        if target is source:
            return
        if not self.can_transition(target):
            allowed = sorted(s.value for s in _TRANSITIONS[source]) or ["nothing (terminal)"]
            raise ValueError(
                f"Cannot go from {source.value} to {target.value} "
                f"(allowed: {', '.join(allowed)}; reason given: {reason or '-'})"
            )

        now = time.monotonic()
        self._changes.append(StateChange(
            source=source,
            target=target,
            reason=reason,
            at=time.time(),
            held_for_s=round(now - self._since, 3),
        ))
        self._state = target
        self._since = now
        logger.info(f"STATE: {source.value} → {target.value}" + (f" ({reason})" if reason else ""))

        if self._listener is None:
            return
        try:
            self._listener(source, target, reason)
        except Exception as e:
            logger.error(f"Transition listener failed ({source.value} → {target.value}): {e}")
