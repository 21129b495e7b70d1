"""
Library Assistant — Time Budget Scheduler

Three independent timers anchored at the join instant:

  soft warning  (T+45)  → escalation: start wrapping up
  hard warning  (T+55)  → escalation: close immediately
  termination   (T+60)  → on_expire()  (the controller's stop())

Timers are plain loop.call_at() handles, cancelled together by cancel().
Nothing is captured at arm time: liveness and the conversation id are
read through callables when a timer fires.
Escalations are best-effort; only termination changes session state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import TimeBudgetConfig, budget_cfg

logger = logging.getLogger("library_assistant.scheduler")

SOFT_WARNING = "soft_warning"
HARD_WARNING = "hard_warning"
TERMINATION = "termination"


@dataclass(frozen=True)
class EscalationStage:
    name: str
    offset: float
    text: str


def build_escalation_message(conversation_id: Optional[str], text: str) -> Dict[str, Any]:
    """App message asking the remote agent to respond with `text` in mind."""
    return {
        "message_type": "conversation",
        "event_type": "conversation.respond",
        "conversation_id": conversation_id,
        "properties": {
            "text": text,
        },
    }


class TimeBudgetScheduler:
    """
    Usage:
        scheduler = TimeBudgetScheduler(
            send_message=transport.send_app_message_to_all,
            on_expire=controller.stop,
            is_live=lambda: controller.is_live,
            conversation_id=lambda: controller.conversation_id,
        )
        scheduler.arm()          # anchor = now
        scheduler.cancel()       # on any teardown path
    """

    def __init__(
        self,
        send_message: Callable[[Dict[str, Any]], Any],
        on_expire: Callable[[], Awaitable[Any]],
        is_live: Callable[[], bool],
        conversation_id: Callable[[], Optional[str]],
        budget: TimeBudgetConfig = budget_cfg,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        session_id: str = "",
    ) -> None:
        if not (0 <= budget.soft_warning_at <= budget.hard_warning_at <= budget.session_budget):
            raise ValueError(
                f"Time budget offsets must be ordered: soft={budget.soft_warning_at}, "
                f"hard={budget.hard_warning_at}, budget={budget.session_budget}"
            )
        self._send_message = send_message
        self._on_expire = on_expire
        self._is_live = is_live
        self._conversation_id = conversation_id
        self._budget = budget
        self._loop = loop
        self._session_id = session_id

        self._stages = (
            EscalationStage(SOFT_WARNING, budget.soft_warning_at, budget.soft_warning_text),
            EscalationStage(HARD_WARNING, budget.hard_warning_at, budget.hard_warning_text),
        )
        self._handles: List[asyncio.TimerHandle] = []
        self._anchor: Optional[float] = None
        self._expiry_task: Optional[asyncio.Task] = None

        self.fired: List[str] = []
        self.escalations_sent = 0
        self.escalations_failed = 0

    @property
    def armed(self) -> bool:
        return bool(self._handles)

    @property
    def anchor(self) -> Optional[float]:
        return self._anchor

    @property
    def deadline(self) -> Optional[float]:
        if self._anchor is None:
            return None
        return self._anchor + self._budget.session_budget

    def remaining(self) -> Optional[float]:
        """Seconds until termination, or None when not armed."""
        if not self.armed or self._anchor is None:
            return None
        return max(0.0, self.deadline - self._get_loop().time())

    # ── Arm / cancel ────────────────────────────────────────────────────

    def arm(self, anchor: Optional[float] = None) -> None:
        """Schedule every stage relative to `anchor` (loop time; default now)."""
        if self._handles:
            logger.warning(f"[{self._session_id}] Scheduler already armed — re-arming")
            self.cancel()

        loop = self._get_loop()
        self._anchor = loop.time() if anchor is None else anchor
        for stage in self._stages:
            self._handles.append(
                loop.call_at(self._anchor + stage.offset, self._fire_escalation, stage)
            )
        self._handles.append(
            loop.call_at(self._anchor + self._budget.session_budget, self._fire_termination)
        )
        logger.info(
            f"[{self._session_id}] Time budget armed: "
            f"soft@{self._budget.soft_warning_at:g}s, hard@{self._budget.hard_warning_at:g}s, "
            f"end@{self._budget.session_budget:g}s"
        )

    def cancel(self) -> None:
        """Cancel all pending timers as a unit. A running expiry is left alone."""
        if not self._handles:
            return
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        logger.info(f"[{self._session_id}] Time budget timers cancelled")

    # ── Timer callbacks ─────────────────────────────────────────────────

    def _fire_escalation(self, stage: EscalationStage) -> None:
        if not self._is_live():
            logger.debug(f"[{self._session_id}] {stage.name} skipped — session no longer live")
            return
        self.fired.append(stage.name)
        payload = build_escalation_message(self._conversation_id(), stage.text)
        try:
            self._send_message(payload)
            self.escalations_sent += 1
            logger.info(f"[{self._session_id}] {stage.name} sent at T+{stage.offset:g}s")
        except Exception as e:
            self.escalations_failed += 1
            logger.warning(f"[{self._session_id}] Failed to send {stage.name}: {e}")

    def _fire_termination(self) -> None:
        self._handles.clear()
        if not self._is_live():
            logger.debug(f"[{self._session_id}] Termination skipped — session no longer live")
            return
        self.fired.append(TERMINATION)
        logger.info(f"[{self._session_id}] Time limit reached — terminating conversation")
        self._expiry_task = self._get_loop().create_task(self._run_expiry())

    async def _run_expiry(self) -> None:
        try:
            await self._on_expire()
        except Exception as e:
            logger.error(f"[{self._session_id}] Termination handler failed: {e}", exc_info=True)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
