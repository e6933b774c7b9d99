from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..core.state_machine import (
    is_affirmative,
    is_negative,
    is_valid_thread_transition,
    state_after_reply,
)
from ..domain.models import Message, PrivateExchange, PrivateMessage, Session, ThreadState
from ..domain.personas import (
    PRIVATE_COLLECTING_INSTRUCTIONS,
    PRIVATE_SHARE_ACCEPTED_INSTRUCTIONS,
    PRIVATE_SHARE_DECLINED_INSTRUCTIONS,
)
from ..errors import CompletionError, PersonaInvocationError, PrivateChannelError, SessionEnded
from ..infrastructure.store import BrainstormStore
from .completion import CompletionRequest, CompletionService
from .persona_router import PersonaRouter


logger = logging.getLogger(__name__)


def _with_goal(instructions: str, goal: Optional[str]) -> str:
    if not goal:
        return instructions
    return f"{instructions}\nSession goal: {goal}"


def _as_history(messages: List[PrivateMessage]) -> List[Dict[str, str]]:
    return [
        {"role": "assistant" if m.origin == "facilitator" else "user", "content": m.content}
        for m in messages
    ]


class PrivateChannel:
    """One-to-one thread between a participant and the facilitator.

    Thread state is stored, not re-derived from history. A reply mentioning
    both "share" and "group" opens the share decision; the participant's next
    message settles it.
    """

    def __init__(self, store: BrainstormStore, completion: CompletionService, router: PersonaRouter) -> None:
        self._store = store
        self._completion = completion
        self._router = router

    async def history(self, session: Session, user_id: str) -> List[PrivateMessage]:
        return await self._store.list_private_messages(session.session_id, user_id)

    async def _move(self, session: Session, user_id: str, current: ThreadState, target: ThreadState) -> None:
        if not is_valid_thread_transition(current, target):
            logger.warning(
                "private_thread_unexpected_transition",
                extra={"session_id": session.session_id, "from": current.value, "to": target.value},
            )
        await self._store.set_thread_state(session.session_id, user_id, target)

    async def _reply(self, session: Session, instructions: str, prior: List[PrivateMessage], text: str) -> str:
        request = CompletionRequest(
            instructions=_with_goal(instructions, session.goal),
            input=text,
            goal=session.goal,
            history=_as_history(prior),
        )
        try:
            result = await self._completion.reply(request)
        except CompletionError as exc:
            logger.warning("private_reply_failed", extra={"session_id": session.session_id, "err": str(exc)})
            raise PrivateChannelError(str(exc)) from exc
        return result.reply

    async def send(self, session: Session, user_id: str, text: str) -> PrivateExchange:
        if not session.is_active:
            raise SessionEnded("This session has ended")
        thread = await self._store.get_thread(session.session_id, user_id)
        prior = await self._store.list_private_messages(session.session_id, user_id)
        await self._store.add_private_message(session.session_id, user_id, text, "user")

        deciding = thread.state is ThreadState.AWAITING_SHARE_DECISION
        shared: Optional[Message] = None

        if deciding and is_affirmative(text):
            ideas = [m.content for m in prior if m.origin == "user"]
            idea = ideas[-1] if ideas else text
            try:
                shared = await self._router.present_anonymously(session, idea)
            except PersonaInvocationError as exc:
                raise PrivateChannelError(str(exc)) from exc
            # Published; never offer the same idea twice even if the acknowledgement fails.
            await self._move(session, user_id, thread.state, ThreadState.SHARED)
            reply = await self._reply(session, PRIVATE_SHARE_ACCEPTED_INSTRUCTIONS, prior, text)
            await self._store.add_private_message(session.session_id, user_id, reply, "facilitator")
            state = ThreadState.SHARED
            logger.info("private_idea_shared", extra={"session_id": session.session_id, "message_id": shared.message_id})
        elif deciding and is_negative(text):
            reply = await self._reply(session, PRIVATE_SHARE_DECLINED_INSTRUCTIONS, prior, text)
            await self._store.add_private_message(session.session_id, user_id, reply, "facilitator")
            state = ThreadState.DECLINED
            await self._move(session, user_id, thread.state, state)
        else:
            reply = await self._reply(session, PRIVATE_COLLECTING_INSTRUCTIONS, prior, text)
            await self._store.add_private_message(session.session_id, user_id, reply, "facilitator")
            state = state_after_reply(reply)
            await self._move(session, user_id, thread.state, state)

        messages = await self._store.list_private_messages(session.session_id, user_id)
        return PrivateExchange(state=state, messages=messages, shared_message=shared)
