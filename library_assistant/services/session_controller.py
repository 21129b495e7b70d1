"""
Library Assistant — Session Controller

================================================================================
ONE BOUNDED LIVE CONVERSATION WITH THE REMOTE LIBRARY AGENT
================================================================================

`SessionController` is the only thing allowed to mutate session state.
A lifetime looks like this:

  1. start(catalog, config)
       • credentials checked first (ConfigurationError, nothing allocated)
       • IDLE → CONNECTING
       • provider.create(context, catalog summary)  → ConversationHandle
       • transport.join(handle.join_url)
       • time budget armed at the join instant
       • CONNECTING → CONNECTED
  2. Transport events flow in:
       • participant/track events → MediaBinder → AGENT_READY
       • app-message / receive-data → EventNormalizer → ToolCallDispatcher
       • error → FAILED, left-meeting → ENDED
  3. stop() — manual, or the budget's termination timer:
       cancel timers → wait out an in-flight join → leave transport
       → end conversation → reset media → ENDED

Everything runs on one event loop. Every handler re-checks the state it
assumes before touching anything, because a timer or a late transport
event can land after teardown has begun. Failures become transitions;
only ConfigurationError leaves start().
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.config import (
    AssistantConfig,
    DispatchConfig,
    TimeBudgetConfig,
    TransportConfig,
    assistant_cfg,
    budget_cfg,
    dispatch_cfg,
    transport_cfg,
)
from ..core.errors import ConfigurationError
from ..core.interfaces import (
    ANY_EVENT,
    APP_MESSAGE,
    ERROR,
    LEFT_MEETING,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    PARTICIPANT_UPDATED,
    RECEIVE_DATA,
    TRACK_STARTED,
    TRANSPORT_EVENTS,
    ConversationProvider,
    MediaSink,
    TransportAdapter,
)
from ..core.latency import LatencyTracer
from ..core.models import (
    CanonicalToolCall,
    CatalogItem,
    ConversationHandle,
    DispatchResult,
    SessionTelemetry,
    ToolCallRecord,
)
from ..core.state_machine import SessionState, SessionStateMachine
from ..processing.auditor import ResponseAuditor, ResponseVerdict
from ..processing.context import build_conversation_context, summarize_catalog
from ..processing.dispatcher import ToolCallDispatcher
from ..processing.media import LOCAL_PARTICIPANT, MediaBinder
from ..processing.normalizer import EventNormalizer, extract_utterance
from ..processing.scheduler import TimeBudgetScheduler

logger = logging.getLogger("library_assistant.controller")

TIME_LIMIT_REASON = "time limit"

# Wildcard event names worth running through the normalizer
_TOOL_EVENT_HINTS = ("tool", "function", "call", "llm", "ai")

# Events that carry tool calls / utterances
_DATA_EVENTS = frozenset({APP_MESSAGE, RECEIVE_DATA})
_MEDIA_EVENTS = frozenset({PARTICIPANT_JOINED, PARTICIPANT_UPDATED, TRACK_STARTED})

StatusCallback = Callable[[str], Any]


def _participant_id(payload: Any) -> str:
    if isinstance(payload, dict):
        participant = payload.get("participant")
        if isinstance(participant, dict):
            if participant.get("local") is True:
                return LOCAL_PARTICIPANT
            return str(participant.get("session_id") or participant.get("id") or "")
        return str(payload.get("participant_id") or "")
    return ""


def _error_detail(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("errorMsg", "error", "message"):
            if payload.get(key):
                return str(payload[key])[:200]
    return "connection error"


class SessionController:
    """
    Owns one conversation session at a time.

    Usage:
        controller = SessionController(
            session_id, provider, transport,
            on_filter_change=..., on_book_recommendation=..., on_status=...,
        )
        await controller.start(books)
        ...
        await controller.stop()
    """

    def __init__(
        self,
        session_id: str,
        provider: ConversationProvider,
        transport: TransportAdapter,
        media_sink: Optional[MediaSink] = None,
        on_filter_change: Optional[Callable[..., Any]] = None,
        on_book_recommendation: Optional[Callable[..., Any]] = None,
        on_status: Optional[StatusCallback] = None,
        budget: TimeBudgetConfig = budget_cfg,
        transport_config: TransportConfig = transport_cfg,
        dispatch_config: DispatchConfig = dispatch_cfg,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.session_id = session_id
        self._provider = provider
        self._transport = transport
        self._media_sink = media_sink

        # Callbacks for streaming data to the UI layer
        self._on_filter_change = on_filter_change
        self._on_book_recommendation = on_book_recommendation
        self._on_status = on_status

        self._budget = budget
        self._transport_config = transport_config
        self._dispatch_config = dispatch_config
        self._loop = loop

        # Inputs remembered for restart()
        self._catalog: List[CatalogItem] = []
        self._config: AssistantConfig = assistant_cfg

        self._generation = 0
        self._new_lifetime()

    # ── Lifetime ────────────────────────────────────────────────────────

    def _new_lifetime(self) -> None:
        """Fresh state machine, timers, history and counters."""
        self._generation += 1
        self._state_machine = SessionStateMachine(on_transition=self._on_state_change)
        self.telemetry = SessionTelemetry(session_id=self.session_id)
        self._latency = LatencyTracer(self.session_id)

        self._handle: Optional[ConversationHandle] = None
        self._joined = False
        self._subscribed = False
        self._teardown_task: Optional[asyncio.Task] = None
        self._join_task: Optional[asyncio.Task] = None
        self._muted = False

        self._normalizer = EventNormalizer(
            enable_keyword_fallback=self._dispatch_config.enable_keyword_fallback,
        )
        self._dispatcher = self._build_dispatcher([])
        self._auditor = ResponseAuditor()
        self._binder = MediaBinder(self._media_sink, session_id=self.session_id)
        self._scheduler = TimeBudgetScheduler(
            send_message=self._send_escalation,
            on_expire=self._on_budget_expired,
            is_live=self._timers_may_fire,
            conversation_id=lambda: self.conversation_id,
            budget=self._budget,
            loop=self._loop,
            session_id=self.session_id,
        )

    def _build_dispatcher(self, catalog: Sequence[CatalogItem]) -> ToolCallDispatcher:
        return ToolCallDispatcher(
            list(catalog),
            on_filter_change=self._on_filter_change,
            on_book_recommendation=self._on_book_recommendation,
            history_size=self._dispatch_config.history_size,
            recommendation_limit=self._dispatch_config.recommendation_limit,
            dispatched_id_window=self._dispatch_config.dispatched_id_window,
        )

    # ── Read-only views ─────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state_machine.state

    @property
    def is_live(self) -> bool:
        return self._state_machine.is_live

    @property
    def failure_reason(self) -> Optional[str]:
        if self.state == SessionState.FAILED:
            return self._state_machine.reason
        return None

    @property
    def handle(self) -> Optional[ConversationHandle]:
        return self._handle

    @property
    def conversation_id(self) -> Optional[str]:
        return self._handle.id if self._handle else None

    @property
    def tool_call_history(self) -> List[ToolCallRecord]:
        return self._dispatcher.history

    @property
    def last_tool_call(self) -> Optional[ToolCallRecord]:
        return self._dispatcher.last_call

    @property
    def scheduler(self) -> TimeBudgetScheduler:
        return self._scheduler

    @property
    def media_bound(self) -> bool:
        return self._binder.is_bound

    @property
    def muted(self) -> bool:
        return self._muted

    # ── Start ───────────────────────────────────────────────────────────

    async def start(
        self,
        catalog: Sequence[CatalogItem],
        config: AssistantConfig = assistant_cfg,
    ) -> Dict[str, Any]:
        """
        Open a session. Raises ConfigurationError when credentials are
        missing; every other failure ends in FAILED and is returned, not raised.
        """
        if not config.has_credentials:
            message = (
                "Library assistant not configured. "
                "Set TAVUS_API_KEY and TAVUS_REPLICA_ID."
            )
            logger.warning(f"[{self.session_id}] {message}")
            await self._emit_status(message)
            raise ConfigurationError(message)

        if self.state != SessionState.IDLE:
            logger.warning(
                f"[{self.session_id}] start() ignored in state {self.state.value} "
                f"(use restart() for a new session)"
            )
            return self.summary()

        self._catalog = list(catalog)
        self._config = config
        self._dispatcher = self._build_dispatcher(self._catalog)
        generation = self._generation

        self._latency.mark("start_requested")
        await self._transition(
            SessionState.CONNECTING, "start requested",
            "Creating conversation with book catalog...",
        )

        # ── Conversation ────────────────────────────────────────────────
        summary = summarize_catalog(self._catalog)
        context = build_conversation_context(summary, self._budget)
        logger.info(f"[{self.session_id}] Creating conversation with {summary.total} books")
        try:
            handle = await self._provider.create(context, summary)
        except Exception as e:
            if self._is_stale(generation, SessionState.CONNECTING):
                logger.info(f"[{self.session_id}] Create failed after stop: {e}")
                return self.summary()
            logger.error(f"[{self.session_id}] Conversation create failed: {e}")
            await self._fail(f"Failed to create conversation: {e}")
            return self.summary()

        if self._is_stale(generation, SessionState.CONNECTING):
            logger.info(f"[{self.session_id}] Stopped during create — ending late conversation")
            await self._end_conversation(handle)
            return self.summary()

        self._handle = handle
        self.telemetry.conversation_id = handle.id
        self._latency.mark("conversation_created")
        await self._emit_status("Conversation created with book restrictions! Joining...")

        # ── Transport ───────────────────────────────────────────────────
        self._subscribe()
        # Teardown waits on this task, so a late join is left before the end
        join_task = self._join_task = self._get_loop().create_task(
            self._transport.join(
                handle.join_url,
                local_audio=self._transport_config.local_audio,
                local_video=self._transport_config.local_video,
            ),
            name=f"join-{self.session_id}",
        )
        try:
            await join_task
        except asyncio.CancelledError:
            if not join_task.cancelled() or not self._is_stale(generation, SessionState.CONNECTING):
                raise
            logger.info(f"[{self.session_id}] Join abandoned by teardown")
            return self.summary()
        except Exception as e:
            if self._is_stale(generation, SessionState.CONNECTING):
                logger.info(f"[{self.session_id}] Join failed after stop: {e}")
                return self.summary()
            logger.error(f"[{self.session_id}] Join failed: {e}")
            await self._fail(f"Failed to join: {e}")
            return self.summary()

        if generation == self._generation:
            self._joined = True
        if self._is_stale(generation, SessionState.CONNECTING):
            logger.info(f"[{self.session_id}] Stopped during join — teardown leaves the call")
            return self.summary()

        self._latency.mark("transport_joined")
        self._scheduler.arm(self._get_loop().time())
        await self._transition(
            SessionState.CONNECTED, "joined call",
            "Connected - waiting for library assistant...",
        )

        # Participants may already be playable by the time join returns
        await self._refresh_media()

        logger.info(
            f"[{self.session_id}] Session started — state={self.state.value}, "
            f"conversation={handle.id}"
        )
        return self.summary()

    # ── Stop / restart ──────────────────────────────────────────────────

    async def stop(self, reason: str = "stopped by user") -> Dict[str, Any]:
        """Idempotent teardown. Concurrent callers share the same teardown."""
        if self._teardown_task is None:
            if not self._state_machine.is_live:
                return self.summary()
            message = (
                "Conversation ended due to time limit"
                if reason == TIME_LIMIT_REASON else "Conversation ended"
            )
            self._begin_teardown(SessionState.ENDED, reason, message)

        await asyncio.shield(self._teardown_task)
        return self.summary()

    async def restart(self) -> Dict[str, Any]:
        """stop(), then a brand-new lifetime started with the last inputs."""
        await self.stop(reason="restart")
        catalog, config = self._catalog, self._config
        self._new_lifetime()
        logger.info(f"[{self.session_id}] Restarting session")
        return await self.start(catalog, config)

    def _begin_teardown(self, target: SessionState, reason: str, message: str) -> asyncio.Task:
        """Synchronously cancel timers, then run the rest of teardown as one task."""
        self._scheduler.cancel()
        self._teardown_task = self._get_loop().create_task(
            self._teardown(target, reason, message),
            name=f"teardown-{self.session_id}",
        )
        self._teardown_task.add_done_callback(self._on_teardown_done)
        return self._teardown_task

    def _on_teardown_done(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.session_id}] Teardown failed: {exc}")

    async def _teardown(self, target: SessionState, reason: str, message: str) -> None:
        try:
            self._unsubscribe()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Unsubscribe failed: {e}")

        await self._settle_join()

        # Transport leave strictly before provider termination
        if self._joined:
            await self._leave_transport()

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._end_conversation(handle)

        try:
            self._binder.reset()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Media reset failed: {e}")
        self.telemetry.media_bound = False

        if target == SessionState.FAILED:
            self.telemetry.failure_reason = reason
        await self._transition(target, reason, message)

    async def _fail(self, reason: str) -> None:
        if self._teardown_task is None:
            if not self._state_machine.is_live:
                return
            self._begin_teardown(SessionState.FAILED, reason, f"Failed: {reason}")
        await asyncio.shield(self._teardown_task)

    async def _settle_join(self) -> None:
        """Wait out a join still in flight; a join that lands counts as joined."""
        join_task = self._join_task
        if join_task is None or join_task.done():
            return
        logger.info(f"[{self.session_id}] Waiting for in-flight join before leaving")
        done, _ = await asyncio.wait({join_task}, timeout=self._transport_config.join_timeout)
        if not done:
            logger.warning(f"[{self.session_id}] Join still pending at teardown — cancelling")
            join_task.cancel()
            # Outcome unknown; leave anyway
            self._joined = True
        elif not join_task.cancelled() and join_task.exception() is None:
            self._joined = True

    async def _leave_transport(self) -> None:
        self._joined = False
        try:
            await self._transport.leave()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Transport leave failed: {e}")

    async def _end_conversation(self, handle: ConversationHandle) -> None:
        try:
            await self._provider.end(handle.id)
        except Exception as e:
            # Best-effort: the provider times the conversation out on its own
            logger.warning(f"[{self.session_id}] Ending conversation {handle.id} failed: {e}")

    # ── Local controls ──────────────────────────────────────────────────

    async def set_muted(self, muted: bool) -> bool:
        """Toggle the user's microphone. Returns True when applied."""
        if not self._joined or not self.is_live:
            return False
        try:
            await self._transport.set_local_audio(not muted)
        except Exception as e:
            logger.error(f"[{self.session_id}] Error toggling mute: {e}")
            await self._emit_status("Error toggling mute")
            return False
        self._muted = muted
        return True

    def set_volume_on(self, on: bool) -> None:
        """Local playback volume — never touches the conversation."""
        self._binder.set_muted(not on)

    # ── Transport events ────────────────────────────────────────────────

    def _subscribe(self) -> None:
        if self._subscribed:
            return
        for event in TRANSPORT_EVENTS:
            self._transport.on(event, self._on_transport_event)
        self._transport.on(ANY_EVENT, self._on_wildcard_event)
        self._subscribed = True

    def _unsubscribe(self) -> None:
        if not self._subscribed:
            return
        for event in TRANSPORT_EVENTS:
            self._transport.off(event, self._on_transport_event)
        self._transport.off(ANY_EVENT, self._on_wildcard_event)
        self._subscribed = False

    def _accepting_events(self) -> bool:
        return (
            self._teardown_task is None
            and self.state in (SessionState.CONNECTED, SessionState.AGENT_READY)
        )

    async def _on_transport_event(self, event_name: str, payload: Any) -> None:
        if not self._accepting_events():
            logger.debug(f"[{self.session_id}] Ignoring '{event_name}' in state {self.state.value}")
            return
        self.telemetry.events_received += 1

        if event_name in _MEDIA_EVENTS:
            await self._refresh_media()

        elif event_name == PARTICIPANT_LEFT:
            pid = _participant_id(payload)
            if pid and pid != LOCAL_PARTICIPANT:
                self._binder.participant_left(pid)
                self.telemetry.media_bound = self._binder.is_bound
                await self._emit_status("Assistant disconnected")

        elif event_name in _DATA_EVENTS:
            await self._handle_data_event(payload)

        elif event_name == ERROR:
            detail = _error_detail(payload)
            logger.error(f"[{self.session_id}] Transport error: {detail}")
            self._begin_teardown(SessionState.FAILED, f"Transport error: {detail}", "Connection error")

        elif event_name == LEFT_MEETING:
            logger.info(f"[{self.session_id}] Left the meeting")
            self._joined = False
            self._begin_teardown(SessionState.ENDED, "left meeting", "Left conversation")

    async def _on_wildcard_event(self, event_name: str, payload: Any) -> None:
        if event_name in TRANSPORT_EVENTS:
            return
        if not any(hint in event_name.lower() for hint in _TOOL_EVENT_HINTS):
            return
        if not self._accepting_events():
            return
        self.telemetry.events_received += 1
        logger.info(f"[{self.session_id}] Potential tool call event: {event_name}")
        await self._handle_data_event(payload)

    async def _handle_data_event(self, payload: Any) -> None:
        utterance = extract_utterance(payload)
        if utterance is not None and utterance.role == "replica":
            await self._audit_response(utterance.speech)

        call = self._normalizer.normalize(payload)
        if call is None:
            self.telemetry.events_dropped += 1
            return
        await self.dispatch(call)

    async def dispatch(self, call: CanonicalToolCall) -> Optional[DispatchResult]:
        """Run one tool call if the session still accepts them."""
        if not self._accepting_events():
            logger.debug(f"[{self.session_id}] Dropping {call.function_name} — session not live")
            return None

        result = await self._dispatcher.dispatch(call)

        if result.outcome == "duplicate":
            self.telemetry.duplicate_calls += 1
            return result
        if result.outcome == "unknown_action":
            self.telemetry.unknown_actions += 1
        elif result.outcome == "dispatch_error":
            self.telemetry.dispatch_errors += 1
        else:
            self.telemetry.tool_calls_dispatched += 1
            self._latency.mark("first_tool_call")
        if call.source == "inferred":
            self.telemetry.inferred_tool_calls += 1

        message = result.message
        if call.source == "inferred":
            message += " (inferred from speech)"
        await self._emit_status(message)
        return result

    async def _audit_response(self, speech: str) -> None:
        verdict = self._auditor.audit(speech)
        if verdict == ResponseVerdict.NATURAL:
            self.telemetry.natural_responses += 1
        elif verdict == ResponseVerdict.OFF_CATALOG:
            self.telemetry.off_catalog_responses += 1
            await self._emit_status("Assistant mentioned a book outside our catalog")
        else:
            self.telemetry.function_leaks += 1
            await self._emit_status("Assistant read out an action name")

    async def _refresh_media(self) -> None:
        try:
            bound = self._binder.refresh(self._transport.participants())
        except Exception as e:
            logger.warning(f"[{self.session_id}] Media refresh failed: {e}")
            return
        self.telemetry.media_bound = bound
        if bound and self.state == SessionState.CONNECTED and self._teardown_task is None:
            self.telemetry.agent_ready = True
            self._latency.mark("agent_ready")
            await self._transition(
                SessionState.AGENT_READY, "remote audio+video playable",
                f"Library assistant ready! We have {len(self._catalog)} books in our catalog",
            )

    # ── Time budget hooks ───────────────────────────────────────────────

    def _timers_may_fire(self) -> bool:
        return self.is_live and self._teardown_task is None

    def _send_escalation(self, payload: Dict[str, Any]) -> None:
        if not self._joined:
            raise RuntimeError("transport not joined")
        self._transport.send_app_message(payload, self._transport_config.app_message_target)

    async def _on_budget_expired(self) -> None:
        await self.stop(reason=TIME_LIMIT_REASON)

    # ── Helpers ─────────────────────────────────────────────────────────

    def _is_stale(self, generation: int, expected: SessionState) -> bool:
        return (
            generation != self._generation
            or self._teardown_task is not None
            or self.state != expected
        )

    async def _transition(self, target: SessionState, reason: str, message: str) -> bool:
        try:
            self._state_machine.transition(target, reason=reason)
        except ValueError as e:
            logger.warning(f"[{self.session_id}] State transition: {e}")
            return False
        await self._emit_status(message)
        return True

    def _on_state_change(self, source: SessionState, target: SessionState, reason: str) -> None:
        self.telemetry.session_state = target.value

    async def _emit_status(self, message: str) -> None:
        if not self._on_status:
            return
        try:
            cb = self._on_status(message)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"[{self.session_id}] Status callback error: {e}")

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def summary(self) -> Dict[str, Any]:
        self.telemetry.escalations_sent = self._scheduler.escalations_sent
        self.telemetry.escalations_failed = self._scheduler.escalations_failed
        last = self._dispatcher.last_call
        return {
            "session_id": self.session_id,
            "session_state": self.state.value,
            "failure_reason": self.failure_reason,
            "conversation": self._handle.to_dict() if self._handle else None,
            "media_bound": self._binder.is_bound,
            "budget_remaining_s": self._scheduler.remaining(),
            "escalations_fired": list(self._scheduler.fired),
            "keyword_fallback": self._normalizer.keyword_fallback_enabled,
            "last_tool_call": last.rendered_call if last else None,
            "tool_call_history": [r.to_dict() for r in self._dispatcher.history],
            "telemetry": self.telemetry.to_dict(),
            "latency": self._latency.summary(),
            "state_history": [c.to_dict() for c in self._state_machine.history],
        }
