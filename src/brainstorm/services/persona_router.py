from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from ..domain.models import Message, Session
from ..domain.personas import ANONYMOUS_PRESENTER_INSTRUCTIONS, PERSONAS, Speaker, persona_for
from ..errors import CompletionError, PersonaInvocationError
from ..infrastructure.store import BrainstormStore
from ..observability.metrics import PERSONA_INVOCATIONS
from .completion import CompletionRequest, CompletionService
from .concepts import ConceptExtractor
from .tasks import TaskRunner


logger = logging.getLogger(__name__)

CONTEXT_LIMIT = 10


def detect_persona(text: str) -> Optional[Speaker]:
    """Return the addressed persona, first in priority order wins (not text position)."""
    lowered = (text or "").lower()
    for speaker, persona in PERSONAS.items():
        if any(token in lowered for token in persona.mention_tokens):
            return speaker
    return None


def build_context(messages: Sequence[Message], limit: int = CONTEXT_LIMIT) -> List[Dict[str, str]]:
    recent = list(messages)[-limit:] if limit > 0 else []
    return [
        {
            "role": "assistant" if m.speaker.is_persona else "user",
            "content": m.content,
        }
        for m in recent
    ]


def build_instructions(speaker: Speaker, goal: Optional[str], anonymous: bool = False) -> str:
    if anonymous and speaker is Speaker.FACILITATOR:
        lines = [ANONYMOUS_PRESENTER_INSTRUCTIONS]
        if goal:
            lines.append(f"Current session goal: {goal}")
        lines.append("Output the rephrased idea directly, without attribution or commentary.")
        return "\n".join(lines)
    persona = persona_for(speaker)
    lines = [persona.instructions]
    if goal:
        lines.append(f"Current session goal: {goal}")
    lines.append(
        f"Remember: You are {persona.display_name}. Stay in character and keep responses brief and impactful."
    )
    return "\n".join(lines)


class PersonaRouter:
    def __init__(
        self,
        store: BrainstormStore,
        completion: CompletionService,
        extractor: ConceptExtractor,
        runner: TaskRunner,
    ) -> None:
        self._store = store
        self._completion = completion
        self._extractor = extractor
        self._runner = runner

    async def invoke(
        self,
        session: Session,
        speaker: Speaker,
        trigger_text: str,
        history: Optional[Sequence[Message]] = None,
        anonymous: bool = False,
    ) -> Message:
        """Ask ``speaker`` to respond to ``trigger_text`` and append its reply.

        ``history`` is the transcript preceding the trigger; the store's full
        transcript is used when omitted. Nothing is appended on failure.
        """
        if not speaker.is_persona:
            raise ValueError("Only personas can be invoked")
        if history is None:
            history = await self._store.list_messages(session.session_id)
        request = CompletionRequest(
            instructions=build_instructions(speaker, session.goal, anonymous=anonymous),
            input=trigger_text,
            goal=session.goal,
            history=[] if anonymous else build_context(history),
            anonymous=anonymous,
        )
        try:
            result = await self._completion.reply(request)
        except CompletionError as exc:
            PERSONA_INVOCATIONS.labels(speaker=speaker.value, outcome="failed").inc()
            logger.warning(
                "persona_invocation_failed",
                extra={"session_id": session.session_id, "speaker": speaker.value, "err": str(exc)},
            )
            raise PersonaInvocationError(speaker.value, exc) from exc

        msg = await self._store.add_message(
            session.session_id,
            result.reply,
            speaker,
            is_anonymous=anonymous,
        )
        PERSONA_INVOCATIONS.labels(speaker=speaker.value, outcome="ok").inc()
        logger.info(
            "persona_invoked",
            extra={
                "session_id": session.session_id,
                "speaker": speaker.value,
                "provider": result.provider,
                "model": result.model,
            },
        )
        self._extractor.schedule(self._runner, session.session_id, msg.content, speaker, msg.message_id)
        return msg

    async def present_anonymously(self, session: Session, idea: str) -> Message:
        """Publish a privately shared idea as an unattributed facilitator message."""
        return await self.invoke(session, Speaker.FACILITATOR, idea, history=[], anonymous=True)
