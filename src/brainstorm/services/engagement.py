from __future__ import annotations

"""Engagement scheduler: proactive persona interventions per session.

One watchdog per active session ticks on a fixed cadence and applies the
kickoff and inactivity rules. Message-count thresholds are evaluated on every
append observed on the session's message topic; markers persisted on the
session make each threshold fire once even with several schedulers running.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..domain.models import Message, Session
from ..domain.personas import Speaker
from ..infrastructure.events import EventBus, messages_topic
from ..infrastructure.store import BrainstormStore
from ..observability.metrics import SCHEDULER_INTERVENTIONS
from .persona_router import PersonaRouter


logger = logging.getLogger(__name__)

KICKOFF_PROMPT = "Please share some initial creative ideas to get us started!"

INACTIVITY_NUDGES: Dict[Speaker, str] = {
    Speaker.IDEA_GENERATOR: (
        "The conversation has slowed down. Please contribute a fresh, creative idea to re-energize the discussion!"
    ),
    Speaker.CRITIC: (
        "The conversation has slowed down. Please challenge an existing idea or ask a critical question "
        "to deepen the discussion!"
    ),
}

ALIGNMENT_COUNT = 15
SUMMARY_COUNT = 30
NUDGE_EVERY = 10
RECENT_WINDOW = 10


def alignment_reminder(goal: Optional[str]) -> str:
    return (
        f'Great discussion so far! Let me remind everyone - our goal is: "{goal or "our main objective"}". '
        "Are we still aligned with this goal? Let's make sure our ideas are serving this purpose."
    )


def summary_prompt(goal: Optional[str]) -> str:
    return (
        "We've had a robust discussion with many ideas on the table! I'm wondering - are we ready to start "
        "summarizing our key insights? Or should we narrow down to the most promising ideas that align with "
        f'our goal: "{goal or "our objective"}"?'
    )


def inactive_nudge(display_name: str, goal: Optional[str]) -> str:
    return (
        f"@{display_name} - I'd love to hear your thoughts! What ideas do you have about "
        f"{goal or 'this topic'}? Any perspectives you'd like to share?"
    )


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class EngagementConfig:
    tick_seconds: float = 30.0
    kickoff_after: float = 60.0
    inactivity_after: float = 120.0
    enabled: bool = True

    @staticmethod
    def from_env() -> "EngagementConfig":
        return EngagementConfig(
            tick_seconds=float(os.getenv("BRAINSTORM_TICK_SECONDS", "30")),
            kickoff_after=float(os.getenv("BRAINSTORM_KICKOFF_AFTER", "60")),
            inactivity_after=float(os.getenv("BRAINSTORM_INACTIVITY_AFTER", "120")),
            enabled=_flag("BRAINSTORM_SCHEDULER_ENABLED", "1"),
        )


class EngagementScheduler:
    def __init__(
        self,
        session_id: str,
        store: BrainstormStore,
        router: PersonaRouter,
        bus: EventBus,
        config: Optional[EngagementConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._router = router
        self._bus = bus
        self._config = config or EngagementConfig()
        self._clock = clock
        self._last_activity = clock()
        # The first inactivity firing goes to the idea generator.
        self._last_inactivity_speaker = Speaker.CRITIC
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_activity(self) -> float:
        return self._last_activity

    def touch(self) -> None:
        self._last_activity = self._clock()

    def start(self, run_timer: bool = True) -> None:
        if self._running:
            return
        self._running = True
        self._last_activity = self._clock()
        self._unsubscribe = self._bus.subscribe(messages_topic(self.session_id), self._on_event)
        if run_timer:
            self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("scheduler_started", extra={"session_id": self.session_id})

    async def stop(self) -> None:
        self._running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped", extra={"session_id": self.session_id})

    async def _loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._config.tick_seconds)
                if not self._running:
                    break
                try:
                    await self.tick()
                except Exception:
                    logger.exception("scheduler_tick_failed", extra={"session_id": self.session_id})
        except asyncio.CancelledError:
            pass

    async def _guarded(self, rule: str, work: Awaitable[Any]) -> bool:
        try:
            await work
        except Exception:
            SCHEDULER_INTERVENTIONS.labels(rule=rule, outcome="failed").inc()
            logger.exception("scheduler_rule_failed", extra={"session_id": self.session_id, "rule": rule})
            return False
        SCHEDULER_INTERVENTIONS.labels(rule=rule, outcome="ok").inc()
        return True

    # Timer rules --------------------------------------------------------
    async def tick(self) -> Optional[str]:
        """Apply the timer rules once; returns the rule that fired, if any."""
        session = await self._store.get_session(self.session_id)
        if session is None or not session.is_active:
            await self.stop()
            return None
        messages = await self._store.list_messages(self.session_id)
        if not messages:
            return None
        elapsed = self._clock() - self._last_activity
        facilitator_count = sum(1 for m in messages if m.speaker is Speaker.FACILITATOR)
        user_count = sum(1 for m in messages if m.speaker is Speaker.USER)

        if facilitator_count == 1 and user_count == 0 and elapsed >= self._config.kickoff_after:
            await self._guarded(
                "kickoff",
                self._router.invoke(session, Speaker.IDEA_GENERATOR, KICKOFF_PROMPT, history=messages),
            )
            self.touch()
            return "kickoff"

        if elapsed >= self._config.inactivity_after:
            speaker = (
                Speaker.CRITIC
                if self._last_inactivity_speaker is Speaker.IDEA_GENERATOR
                else Speaker.IDEA_GENERATOR
            )
            self._last_inactivity_speaker = speaker
            await self._guarded(
                "inactivity",
                self._router.invoke(session, speaker, INACTIVITY_NUDGES[speaker], history=messages),
            )
            self.touch()
            return "inactivity"
        return None

    # Count thresholds ---------------------------------------------------
    async def _on_event(self, payload: Dict[str, Any]) -> None:
        if payload.get("event") != "insert":
            return
        row = payload.get("row") or {}
        messages = await self._store.list_messages(self.session_id)
        count = next(
            (i + 1 for i, m in enumerate(messages) if m.message_id == row.get("message_id")),
            len(messages),
        )
        await self.on_message_appended(count, author_id=row.get("author_id"))

    async def on_message_appended(self, count: int, author_id: Optional[str] = None) -> None:
        """React to the transcript reaching ``count`` messages.

        ``author_id`` is the participant whose message produced the count;
        they are never nudged by the check it drives.
        """
        self.touch()
        if count <= 0:
            return
        session = await self._store.get_session(self.session_id)
        if session is None or not session.is_active:
            return

        if count % NUDGE_EVERY == 0:
            await self._guarded("inactive_participants", self._nudge_inactive(session, count, author_id))

        if count == ALIGNMENT_COUNT:
            await self._guarded(
                "alignment_reminder",
                self._emit_once(session, f"count:{ALIGNMENT_COUNT}", alignment_reminder(session.goal)),
            )
        elif count == SUMMARY_COUNT:
            await self._guarded(
                "summary_prompt",
                self._emit_once(session, f"count:{SUMMARY_COUNT}", summary_prompt(session.goal)),
            )

    async def _emit_once(self, session: Session, marker: str, text: str) -> Optional[Message]:
        if not await self._store.claim_threshold(session.session_id, marker):
            return None
        return await self._store.add_message(session.session_id, text, Speaker.GOAL_KEEPER)

    async def _nudge_inactive(self, session: Session, count: int, viewer_id: Optional[str]) -> int:
        if not await self._store.claim_threshold(session.session_id, f"nudge:{count}"):
            return 0
        participants = await self._store.list_participants(session.session_id)
        messages = await self._store.list_messages(session.session_id)
        recent = messages[:count][-RECENT_WINDOW:]
        active = {
            m.author_id
            for m in recent
            if m.speaker is Speaker.USER and not m.is_anonymous and m.author_id
        }
        sent = 0
        for participant in participants:
            if participant.user_id == viewer_id or participant.user_id in active:
                continue
            name = participant.display_name or "team member"
            await self._store.add_message(
                session.session_id, inactive_nudge(name, session.goal), Speaker.FACILITATOR
            )
            sent += 1
        if sent:
            logger.info("inactive_participants_nudged", extra={"session_id": session.session_id, "count": sent})
        return sent


class SchedulerRegistry:
    """Owns the one scheduler per active session in this process."""

    def __init__(
        self,
        store: BrainstormStore,
        router: PersonaRouter,
        bus: EventBus,
        config: Optional[EngagementConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._router = router
        self._bus = bus
        self._config = config or EngagementConfig.from_env()
        self._clock = clock
        self._schedulers: Dict[str, EngagementScheduler] = {}

    @property
    def config(self) -> EngagementConfig:
        return self._config

    def get(self, session_id: str) -> Optional[EngagementScheduler]:
        return self._schedulers.get(session_id)

    def start(self, session_id: str, run_timer: bool = True) -> Optional[EngagementScheduler]:
        if not self._config.enabled:
            return None
        scheduler = self._schedulers.get(session_id)
        if scheduler and scheduler.running:
            return scheduler
        scheduler = EngagementScheduler(
            session_id,
            self._store,
            self._router,
            self._bus,
            config=self._config,
            clock=self._clock,
        )
        self._schedulers[session_id] = scheduler
        scheduler.start(run_timer=run_timer)
        return scheduler

    async def stop(self, session_id: str) -> None:
        scheduler = self._schedulers.pop(session_id, None)
        if scheduler:
            await scheduler.stop()

    async def shutdown(self) -> None:
        for session_id in list(self._schedulers):
            await self.stop(session_id)
