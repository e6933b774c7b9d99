from __future__ import annotations

import base64
import json
import logging
import os
from typing import Awaitable, Callable, List, Optional

from ..domain.models import (
    ConceptEdge,
    ConceptNode,
    EndSessionResult,
    Message,
    Notification,
    Session,
    SessionStatus,
    SessionSummary,
)
from ..core.state_machine import is_valid_session_transition
from ..errors import CompletionError, NotSessionCreator
from ..infrastructure.store import BrainstormStore, new_id, now_iso
from .completion import IMAGE_PROMPT, CompletionService


logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[Session, List[ConceptNode], List[ConceptEdge]], Awaitable[str]]


async def json_snapshot(session: Session, nodes: List[ConceptNode], edges: List[ConceptEdge]) -> str:
    """Default snapshot: the mind map as a JSON document inside a data URL."""
    doc = {
        "session_id": session.session_id,
        "title": session.title,
        "captured_at": now_iso(),
        "nodes": [
            {
                "id": n.node_id,
                "label": n.label,
                "x": n.x,
                "y": n.y,
                "speaker": n.speaker.value if n.speaker else None,
                "is_cancelled": n.is_cancelled,
                "highlight": n.highlight,
            }
            for n in nodes
        ],
        "edges": [{"id": e.edge_id, "source": e.source_node_id, "target": e.target_node_id} for e in edges],
    }
    raw = json.dumps(doc, separators=(",", ":")).encode("utf-8")
    return "data:application/json;base64," + base64.b64encode(raw).decode("ascii")


def format_transcript(messages: List[Message]) -> str:
    return "\n".join(f"[{m.speaker.value}]: {m.content}" for m in messages)


def _image_enabled() -> bool:
    return (os.getenv("BRAINSTORM_IMAGE_ENABLED", "1") or "").strip().lower() in ("1", "true", "yes")


class SessionSummarizer:
    def __init__(
        self,
        store: BrainstormStore,
        completion: CompletionService,
        snapshot_provider: Optional[SnapshotProvider] = json_snapshot,
        image_enabled: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._completion = completion
        self._snapshot_provider = snapshot_provider
        self._image_enabled = _image_enabled() if image_enabled is None else image_enabled

    async def end_session(
        self,
        session: Session,
        actor_id: str,
        snapshot: Optional[str] = None,
    ) -> EndSessionResult:
        """End ``session`` and produce its summary.

        Snapshot, summary and illustration are each best effort: a failure is
        reported as a warning and the session still ends.
        """
        if session.created_by != actor_id:
            raise NotSessionCreator("Only the session creator can end the session")

        warnings: List[Notification] = []
        nodes = await self._store.list_nodes(session.session_id)
        edges = await self._store.list_edges(session.session_id)
        labels = [n.label for n in nodes]

        snapshot_ref = snapshot
        if snapshot_ref is None and self._snapshot_provider is not None:
            try:
                snapshot_ref = await self._snapshot_provider(session, nodes, edges)
            except Exception as exc:
                logger.warning("snapshot_failed", extra={"session_id": session.session_id, "err": str(exc)})
                warnings.append(
                    Notification(level="warning", title="Snapshot failed", detail="Could not capture the mind map")
                )

        draft = None
        messages = await self._store.list_messages(session.session_id)
        if not messages:
            warnings.append(
                Notification(level="warning", title="Summary skipped", detail="No messages found for this session")
            )
        else:
            try:
                draft = await self._completion.summarize(
                    format_transcript(messages), labels, session.title, session.goal
                )
            except CompletionError as exc:
                logger.warning("summary_failed", extra={"session_id": session.session_id, "err": str(exc)})
                warnings.append(Notification(level="warning", title="Summary failed", detail=str(exc)))

        image_ref = None
        if draft is not None and self._image_enabled:
            prompt = IMAGE_PROMPT.format(title=session.title, labels=", ".join(labels))
            try:
                image_ref = await self._completion.render_image(prompt)
            except CompletionError as exc:
                logger.warning("summary_image_failed", extra={"session_id": session.session_id, "err": str(exc)})
                warnings.append(Notification(level="warning", title="Illustration failed", detail=str(exc)))

        summary = None
        if draft is not None:
            summary = await self._store.save_summary(
                SessionSummary(
                    summary_id=new_id(),
                    session_id=session.session_id,
                    summary_text=draft.summary,
                    key_insights=list(draft.key_insights),
                    main_ideas=list(draft.main_ideas),
                    action_items=list(draft.action_items),
                    snapshot_ref=snapshot_ref,
                    image_ref=image_ref,
                    created_at=now_iso(),
                )
            )

        if is_valid_session_transition(session.status, SessionStatus.ENDED):
            ended = await self._store.mark_session_ended(session.session_id)
        else:
            # Re-summarising an ended session leaves its status alone.
            ended = session
        logger.info(
            "session_ended",
            extra={
                "session_id": session.session_id,
                "summary": summary is not None,
                "warnings": len(warnings),
            },
        )
        return EndSessionResult(session=ended, summary=summary, notifications=warnings)

    async def get_summary(self, session: Session) -> Optional[SessionSummary]:
        return await self._store.get_summary(session.session_id)

    async def delete_summary(self, session: Session, actor_id: str) -> bool:
        if session.created_by != actor_id:
            raise NotSessionCreator("Only the session creator can delete the summary")
        return await self._store.delete_summary(session.session_id)
