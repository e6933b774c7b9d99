from __future__ import annotations

import re
from typing import Dict, List

from ..domain.models import SessionStatus, ThreadState

# Sessions end once and never come back.
SESSION_TRANSITIONS: Dict[SessionStatus, List[SessionStatus]] = {
    SessionStatus.ACTIVE: [SessionStatus.ENDED],
    SessionStatus.ENDED: [],
}

# Private facilitator thread (per session and user).
THREAD_TRANSITIONS: Dict[ThreadState, List[ThreadState]] = {
    ThreadState.IDLE: [ThreadState.COLLECTING, ThreadState.AWAITING_SHARE_DECISION],
    ThreadState.COLLECTING: [ThreadState.COLLECTING, ThreadState.AWAITING_SHARE_DECISION],
    ThreadState.AWAITING_SHARE_DECISION: [
        ThreadState.SHARED,
        ThreadState.DECLINED,
        ThreadState.COLLECTING,
        ThreadState.AWAITING_SHARE_DECISION,
    ],
    ThreadState.SHARED: [ThreadState.COLLECTING, ThreadState.AWAITING_SHARE_DECISION],
    ThreadState.DECLINED: [ThreadState.COLLECTING, ThreadState.AWAITING_SHARE_DECISION],
}

_AFFIRMATIVE = re.compile(r"^(yes|yeah|yep|sure|ok|okay|y|share|post)", re.IGNORECASE)
_NEGATIVE = re.compile(r"^(no|nah|nope|n|don't|dont)", re.IGNORECASE)


def is_valid_session_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS.get(current, [])


def is_valid_thread_transition(current: ThreadState, target: ThreadState) -> bool:
    return target in THREAD_TRANSITIONS.get(current, [])


def is_affirmative(text: str) -> bool:
    return bool(_AFFIRMATIVE.match((text or "").strip()))


def is_negative(text: str) -> bool:
    return bool(_NEGATIVE.match((text or "").strip()))


def asks_to_share(reply: str) -> bool:
    """Facilitator reply that invites the user to share with the group."""
    lowered = (reply or "").lower()
    return "share" in lowered and "group" in lowered


def state_after_reply(reply: str) -> ThreadState:
    return ThreadState.AWAITING_SHARE_DECISION if asks_to_share(reply) else ThreadState.COLLECTING
