from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import (
    ConceptEdge,
    ConceptEdgeCreate,
    ConceptNode,
    ConceptNodeCreate,
    ConceptNodeUpdate,
    EndSessionResult,
    MindMap,
    Notification,
    Participant,
    PostMessageResult,
    PrivateExchange,
    PrivateMessage,
    Session,
    SessionCreate,
    SessionSummary,
    SessionView,
)
from ..domain.personas import Speaker
from ..errors import InvalidInput, NodeNotFound, PersonaInvocationError, SessionEnded, SessionNotFound
from ..infrastructure.events import EventBus, get_event_bus
from ..infrastructure.store import NULLABLE_NODE_FIELDS, BrainstormStore, get_store
from ..security.auth import User
from .completion import CompletionService, get_completion_service
from .concepts import CANVAS_HEIGHT, CANVAS_WIDTH, ConceptExtractor
from .engagement import EngagementConfig, SchedulerRegistry
from .persona_router import PersonaRouter, detect_persona
from .private_channel import PrivateChannel
from .summarizer import SessionSummarizer, SnapshotProvider, json_snapshot
from .tasks import TaskRunner, get_task_runner


logger = logging.getLogger(__name__)


def greeting(goal: Optional[str]) -> str:
    return (
        f"Hello everyone! Let's discuss {goal or 'our topic'}. "
        "Before I call in my team of agents, would anyone like to start by sharing their ideas?"
    )


class SessionService:
    """Session lifecycle: create, join, converse, edit the mind map, end."""

    def __init__(
        self,
        store: BrainstormStore,
        completion: CompletionService,
        bus: EventBus,
        runner: Optional[TaskRunner] = None,
        config: Optional[EngagementConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        snapshot_provider: Optional[SnapshotProvider] = json_snapshot,
        image_enabled: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.runner = runner or TaskRunner()
        self._rng = rng or random.Random()
        self.extractor = ConceptExtractor(store, completion, rng=self._rng)
        self.router = PersonaRouter(store, completion, self.extractor, self.runner)
        self.private = PrivateChannel(store, completion, self.router)
        self.summarizer = SessionSummarizer(
            store, completion, snapshot_provider=snapshot_provider, image_enabled=image_enabled
        )
        self.schedulers = SchedulerRegistry(store, self.router, bus, config=config, clock=clock)

    # Sessions -----------------------------------------------------------
    async def create_session(self, user: User, data: SessionCreate) -> Session:
        title = data.title.strip()
        if not title:
            raise InvalidInput("Title is required")
        session = await self.store.create_session(title, data.goal, user.user_id)
        await self.store.upsert_participant(session.session_id, user.user_id, user.display_name)
        logger.info("session_created", extra={"session_id": session.session_id, "slug": session.slug})
        return session

    async def resolve(self, slug: str) -> Session:
        session = await self.store.get_session_by_slug(slug)
        if session is None:
            raise SessionNotFound(slug)
        return session

    async def _require_active(self, slug: str) -> Session:
        session = await self.resolve(slug)
        if not session.is_active:
            raise SessionEnded("This session has ended")
        return session

    async def open_session(self, slug: str, user: User) -> SessionView:
        """Join the session, greet an empty room and make sure its scheduler runs."""
        session = await self.resolve(slug)
        await self.store.upsert_participant(session.session_id, user.user_id, user.display_name)
        if session.is_active:
            self.schedulers.start(session.session_id)
            if await self.store.count_messages(session.session_id) == 0:
                # Claimed so concurrent first visits greet once.
                if await self.store.claim_threshold(session.session_id, "greeting"):
                    await self.store.add_message(session.session_id, greeting(session.goal), Speaker.FACILITATOR)
        session = await self.resolve(slug)
        messages = await self.store.list_messages(session.session_id)
        participants = await self.store.list_participants(session.session_id)
        return SessionView(
            session=session,
            messages=[m.public() for m in messages],
            participant_count=len(participants),
        )

    async def participants(self, slug: str) -> List[Participant]:
        session = await self.resolve(slug)
        return await self.store.list_participants(session.session_id)

    async def end_session(self, slug: str, user: User, snapshot: Optional[str] = None) -> EndSessionResult:
        session = await self.resolve(slug)
        result = await self.summarizer.end_session(session, user.user_id, snapshot=snapshot)
        await self.schedulers.stop(session.session_id)
        return result

    async def get_summary(self, slug: str) -> Optional[SessionSummary]:
        session = await self.resolve(slug)
        return await self.summarizer.get_summary(session)

    async def delete_summary(self, slug: str, user: User) -> bool:
        session = await self.resolve(slug)
        return await self.summarizer.delete_summary(session, user.user_id)

    # Messages -----------------------------------------------------------
    async def list_messages(self, slug: str) -> List[Dict[str, Any]]:
        session = await self.resolve(slug)
        return [m.public() for m in await self.store.list_messages(session.session_id)]

    async def post_message(self, slug: str, user: User, content: str) -> PostMessageResult:
        session = await self._require_active(slug)
        await self.store.upsert_participant(session.session_id, user.user_id, user.display_name)
        prior = await self.store.list_messages(session.session_id)
        message = await self.store.add_message(session.session_id, content, Speaker.USER, author_id=user.user_id)

        notifications: List[Notification] = []
        reply = None
        speaker = detect_persona(content)
        if speaker is not None:
            try:
                reply = await self.router.invoke(session, speaker, content, history=prior)
            except PersonaInvocationError as exc:
                notifications.append(Notification(level="error", title=exc.title, detail=str(exc)))
        return PostMessageResult(message=message, reply=reply, notifications=notifications)

    # Mind map -----------------------------------------------------------
    async def mindmap(self, slug: str) -> MindMap:
        session = await self.resolve(slug)
        nodes = await self.store.list_nodes(session.session_id)
        edges = await self.store.list_edges(session.session_id)
        return MindMap(nodes=nodes, edges=edges)

    async def _node_in(self, session: Session, node_id: str) -> ConceptNode:
        node = await self.store.get_node(node_id)
        if node is None or node.session_id != session.session_id:
            raise NodeNotFound("Node not found")
        return node

    async def add_node(self, slug: str, data: ConceptNodeCreate) -> ConceptNode:
        session = await self._require_active(slug)
        label = data.label.strip()
        if not label:
            raise InvalidInput("Label is required")
        x = data.x if data.x is not None else self._rng.random() * CANVAS_WIDTH
        y = data.y if data.y is not None else self._rng.random() * CANVAS_HEIGHT
        return await self.store.create_node(session.session_id, label, x, y)

    async def update_node(self, slug: str, node_id: str, data: ConceptNodeUpdate) -> ConceptNode:
        session = await self._require_active(slug)
        await self._node_in(session, node_id)
        changes = data.model_dump(exclude_unset=True)
        # Only the highlight may be cleared.
        cleared = sorted(k for k, v in changes.items() if v is None and k not in NULLABLE_NODE_FIELDS)
        if cleared:
            raise InvalidInput(f"{', '.join(cleared)} cannot be null")
        if "label" in changes:
            changes["label"] = changes["label"].strip()
            if not changes["label"]:
                raise InvalidInput("Label is required")
        try:
            return await self.store.update_node(node_id, changes)
        except KeyError:
            raise NodeNotFound("Node not found") from None

    async def delete_node(self, slug: str, node_id: str) -> bool:
        session = await self._require_active(slug)
        await self._node_in(session, node_id)
        return await self.store.delete_node(node_id)

    async def add_edge(self, slug: str, data: ConceptEdgeCreate) -> ConceptEdge:
        session = await self._require_active(slug)
        try:
            return await self.store.create_edge(session.session_id, data.source_node_id, data.target_node_id)
        except KeyError:
            raise NodeNotFound("Node not found") from None

    async def delete_edge(self, slug: str, edge_id: str) -> bool:
        session = await self._require_active(slug)
        edges = await self.store.list_edges(session.session_id)
        if not any(e.edge_id == edge_id for e in edges):
            raise NodeNotFound("Edge not found")
        return await self.store.delete_edge(edge_id)

    # Private side-channel ----------------------------------------------
    async def private_history(self, slug: str, user: User) -> List[PrivateMessage]:
        session = await self.resolve(slug)
        return await self.private.history(session, user.user_id)

    async def private_send(self, slug: str, user: User, content: str) -> PrivateExchange:
        session = await self._require_active(slug)
        return await self.private.send(session, user.user_id, content)

    async def shutdown(self) -> None:
        await self.schedulers.shutdown()
        await self.runner.shutdown()


_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    global _service
    if _service is None:
        _service = SessionService(
            store=get_store(),
            completion=get_completion_service(),
            bus=get_event_bus(),
            runner=get_task_runner(),
        )
    return _service


def reset_session_service(service: Optional[SessionService] = None) -> None:
    global _service
    _service = service
