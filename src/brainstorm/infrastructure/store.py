from __future__ import annotations

from datetime import UTC, datetime, timedelta
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Protocol
import logging
import os
import secrets
import uuid

from ..domain.models import (
    ConceptEdge,
    ConceptNode,
    Message,
    Participant,
    PrivateMessage,
    PrivateOrigin,
    PrivateThread,
    Session,
    SessionStatus,
    SessionSummary,
    ThreadState,
)
from ..domain.personas import Speaker
from ..core.state_machine import is_valid_session_transition
from ..errors import SessionNotFound
from .events import EventBus, edges_topic, messages_topic, nodes_topic, private_topic, status_topic


logger = logging.getLogger(__name__)

NODE_MUTABLE_FIELDS = {"label", "x", "y", "is_cancelled", "highlight"}
NULLABLE_NODE_FIELDS = {"highlight"}


def node_patch(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Mutable node fields from `changes`; a null only clears nullable ones."""
    return {
        k: v
        for k, v in changes.items()
        if k in NODE_MUTABLE_FIELDS and (v is not None or k in NULLABLE_NODE_FIELDS)
    }


def new_id() -> str:
    return uuid.uuid4().hex


def new_slug() -> str:
    return secrets.token_hex(16)


def format_ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return format_ts(datetime.now(UTC))


class BrainstormStore(Protocol):
    async def create_session(self, title: str, goal: Optional[str], created_by: str) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def get_session_by_slug(self, slug: str) -> Optional[Session]: ...

    async def mark_session_ended(self, session_id: str) -> Session: ...

    async def claim_threshold(self, session_id: str, marker: str) -> bool: ...

    async def add_message(
        self,
        session_id: str,
        content: str,
        speaker: Speaker,
        author_id: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> Message: ...

    async def list_messages(self, session_id: str) -> List[Message]: ...

    async def count_messages(self, session_id: str) -> int: ...

    async def upsert_participant(self, session_id: str, user_id: str, display_name: str) -> Participant: ...

    async def list_participants(self, session_id: str) -> List[Participant]: ...

    async def create_node(
        self,
        session_id: str,
        label: str,
        x: float,
        y: float,
        speaker: Optional[Speaker] = None,
        message_id: Optional[str] = None,
    ) -> ConceptNode: ...

    async def list_nodes(self, session_id: str) -> List[ConceptNode]: ...

    async def find_nodes_by_labels(self, session_id: str, labels: Iterable[str]) -> List[ConceptNode]: ...

    async def get_node(self, node_id: str) -> Optional[ConceptNode]: ...

    async def update_node(self, node_id: str, changes: Dict[str, Any]) -> ConceptNode: ...

    async def delete_node(self, node_id: str) -> bool: ...

    async def create_edge(self, session_id: str, source_node_id: str, target_node_id: str) -> ConceptEdge: ...

    async def list_edges(self, session_id: str) -> List[ConceptEdge]: ...

    async def delete_edge(self, edge_id: str) -> bool: ...

    async def add_private_message(
        self, session_id: str, user_id: str, content: str, origin: PrivateOrigin
    ) -> PrivateMessage: ...

    async def list_private_messages(self, session_id: str, user_id: str) -> List[PrivateMessage]: ...

    async def get_thread(self, session_id: str, user_id: str) -> PrivateThread: ...

    async def set_thread_state(self, session_id: str, user_id: str, state: ThreadState) -> PrivateThread: ...

    async def save_summary(self, summary: SessionSummary) -> SessionSummary: ...

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]: ...

    async def delete_summary(self, session_id: str) -> bool: ...


class InMemoryBrainstormStore:
    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self._bus = bus
        self._sessions: Dict[str, Session] = {}
        self._by_slug: Dict[str, str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._last_stamp: Dict[str, datetime] = {}
        self._participants: Dict[str, Dict[str, Participant]] = {}
        self._nodes: Dict[str, ConceptNode] = {}
        self._edges: Dict[str, ConceptEdge] = {}
        self._private: Dict[tuple[str, str], List[PrivateMessage]] = {}
        self._threads: Dict[tuple[str, str], PrivateThread] = {}
        self._summaries: Dict[str, SessionSummary] = {}
        self._lock = RLock()

    async def _publish(self, topic: str, event: str, row: Dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.publish(topic, event, row)

    def _require_session(self, session_id: str) -> Session:
        sess = self._sessions.get(session_id)
        if not sess:
            raise SessionNotFound(session_id)
        return sess

    def _stamp(self, session_id: str) -> str:
        # Strictly increasing per session so append order == timestamp order.
        now = datetime.now(UTC)
        last = self._last_stamp.get(session_id)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self._last_stamp[session_id] = now
        return format_ts(now)

    # Sessions -----------------------------------------------------------
    async def create_session(self, title: str, goal: Optional[str], created_by: str) -> Session:
        with self._lock:
            sess = Session(
                session_id=new_id(),
                title=title.strip(),
                goal=(goal or "").strip() or None,
                slug=new_slug(),
                created_by=created_by,
                created_at=now_iso(),
            )
            self._sessions[sess.session_id] = sess
            self._by_slug[sess.slug] = sess.session_id
            self._messages[sess.session_id] = []
            self._participants[sess.session_id] = {}
            return sess.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            sess = self._sessions.get(session_id)
            return sess.model_copy(deep=True) if sess else None

    async def get_session_by_slug(self, slug: str) -> Optional[Session]:
        with self._lock:
            sid = self._by_slug.get(slug)
            sess = self._sessions.get(sid) if sid else None
            return sess.model_copy(deep=True) if sess else None

    async def mark_session_ended(self, session_id: str) -> Session:
        with self._lock:
            sess = self._require_session(session_id)
            changed = is_valid_session_transition(sess.status, SessionStatus.ENDED)
            sess.status = SessionStatus.ENDED
            result = sess.model_copy(deep=True)
        if changed:
            await self._publish(status_topic(session_id), "update", result.model_dump(mode="json"))
        return result

    async def claim_threshold(self, session_id: str, marker: str) -> bool:
        with self._lock:
            sess = self._require_session(session_id)
            if marker in sess.triggered_thresholds:
                return False
            sess.triggered_thresholds.append(marker)
            return True

    # Messages -----------------------------------------------------------
    async def add_message(
        self,
        session_id: str,
        content: str,
        speaker: Speaker,
        author_id: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> Message:
        with self._lock:
            self._require_session(session_id)
            msg = Message(
                message_id=new_id(),
                session_id=session_id,
                content=content,
                speaker=speaker,
                created_at=self._stamp(session_id),
                author_id=author_id,
                is_anonymous=is_anonymous,
            )
            self._messages.setdefault(session_id, []).append(msg)
        await self._publish(messages_topic(session_id), "insert", msg.public())
        return msg.model_copy()

    async def list_messages(self, session_id: str) -> List[Message]:
        with self._lock:
            return [m.model_copy() for m in self._messages.get(session_id, [])]

    async def count_messages(self, session_id: str) -> int:
        with self._lock:
            return len(self._messages.get(session_id, []))

    # Participants -------------------------------------------------------
    async def upsert_participant(self, session_id: str, user_id: str, display_name: str) -> Participant:
        with self._lock:
            self._require_session(session_id)
            members = self._participants.setdefault(session_id, {})
            existing = members.get(user_id)
            if existing:
                return existing.model_copy()
            participant = Participant(
                session_id=session_id,
                user_id=user_id,
                display_name=display_name,
                joined_at=now_iso(),
            )
            members[user_id] = participant
            return participant.model_copy()

    async def list_participants(self, session_id: str) -> List[Participant]:
        with self._lock:
            members = self._participants.get(session_id, {})
            return sorted((p.model_copy() for p in members.values()), key=lambda p: p.joined_at)

    # Concept graph ------------------------------------------------------
    async def create_node(
        self,
        session_id: str,
        label: str,
        x: float,
        y: float,
        speaker: Optional[Speaker] = None,
        message_id: Optional[str] = None,
    ) -> ConceptNode:
        with self._lock:
            self._require_session(session_id)
            node = ConceptNode(
                node_id=new_id(),
                session_id=session_id,
                label=label,
                x=float(x),
                y=float(y),
                speaker=speaker,
                message_id=message_id,
                created_at=now_iso(),
            )
            self._nodes[node.node_id] = node
        await self._publish(nodes_topic(session_id), "insert", node.model_dump(mode="json"))
        return node.model_copy()

    async def list_nodes(self, session_id: str) -> List[ConceptNode]:
        with self._lock:
            return [n.model_copy() for n in self._nodes.values() if n.session_id == session_id]

    async def find_nodes_by_labels(self, session_id: str, labels: Iterable[str]) -> List[ConceptNode]:
        wanted = {label.strip().lower() for label in labels if label and label.strip()}
        if not wanted:
            return []
        with self._lock:
            return [
                n.model_copy()
                for n in self._nodes.values()
                if n.session_id == session_id and n.label.strip().lower() in wanted
            ]

    async def get_node(self, node_id: str) -> Optional[ConceptNode]:
        with self._lock:
            node = self._nodes.get(node_id)
            return node.model_copy() if node else None

    async def update_node(self, node_id: str, changes: Dict[str, Any]) -> ConceptNode:
        with self._lock:
            node = self._nodes.get(node_id)
            if not node:
                raise KeyError("Node not found")
            for key, value in node_patch(changes).items():
                setattr(node, key, value)
            result = node.model_copy()
        await self._publish(nodes_topic(result.session_id), "update", result.model_dump(mode="json"))
        return result

    async def delete_node(self, node_id: str) -> bool:
        with self._lock:
            node = self._nodes.pop(node_id, None)
            if not node:
                return False
            orphaned = [
                e for e in self._edges.values() if node_id in (e.source_node_id, e.target_node_id)
            ]
            for edge in orphaned:
                self._edges.pop(edge.edge_id, None)
        for edge in orphaned:
            await self._publish(edges_topic(node.session_id), "delete", edge.model_dump(mode="json"))
        await self._publish(nodes_topic(node.session_id), "delete", node.model_dump(mode="json"))
        return True

    async def create_edge(self, session_id: str, source_node_id: str, target_node_id: str) -> ConceptEdge:
        with self._lock:
            for nid in (source_node_id, target_node_id):
                node = self._nodes.get(nid)
                if not node or node.session_id != session_id:
                    raise KeyError("Node not found")
            edge = ConceptEdge(
                edge_id=new_id(),
                session_id=session_id,
                source_node_id=source_node_id,
                target_node_id=target_node_id,
                created_at=now_iso(),
            )
            self._edges[edge.edge_id] = edge
        await self._publish(edges_topic(session_id), "insert", edge.model_dump(mode="json"))
        return edge.model_copy()

    async def list_edges(self, session_id: str) -> List[ConceptEdge]:
        with self._lock:
            return [e.model_copy() for e in self._edges.values() if e.session_id == session_id]

    async def delete_edge(self, edge_id: str) -> bool:
        with self._lock:
            edge = self._edges.pop(edge_id, None)
        if not edge:
            return False
        await self._publish(edges_topic(edge.session_id), "delete", edge.model_dump(mode="json"))
        return True

    # Private side-channel ----------------------------------------------
    async def add_private_message(
        self, session_id: str, user_id: str, content: str, origin: PrivateOrigin
    ) -> PrivateMessage:
        with self._lock:
            self._require_session(session_id)
            msg = PrivateMessage(
                private_message_id=new_id(),
                session_id=session_id,
                user_id=user_id,
                content=content,
                origin=origin,
                created_at=self._stamp(f"{session_id}:{user_id}"),
            )
            self._private.setdefault((session_id, user_id), []).append(msg)
        await self._publish(private_topic(session_id, user_id), "insert", msg.model_dump(mode="json"))
        return msg.model_copy()

    async def list_private_messages(self, session_id: str, user_id: str) -> List[PrivateMessage]:
        with self._lock:
            return [m.model_copy() for m in self._private.get((session_id, user_id), [])]

    async def get_thread(self, session_id: str, user_id: str) -> PrivateThread:
        with self._lock:
            thread = self._threads.get((session_id, user_id))
            if thread:
                return thread.model_copy()
            return PrivateThread(session_id=session_id, user_id=user_id)

    async def set_thread_state(self, session_id: str, user_id: str, state: ThreadState) -> PrivateThread:
        with self._lock:
            thread = PrivateThread(session_id=session_id, user_id=user_id, state=state, updated_at=now_iso())
            self._threads[(session_id, user_id)] = thread
            return thread.model_copy()

    # Summaries ----------------------------------------------------------
    async def save_summary(self, summary: SessionSummary) -> SessionSummary:
        with self._lock:
            self._require_session(summary.session_id)
            self._summaries[summary.session_id] = summary.model_copy(deep=True)
            return summary.model_copy(deep=True)

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        with self._lock:
            summary = self._summaries.get(session_id)
            return summary.model_copy(deep=True) if summary else None

    async def delete_summary(self, session_id: str) -> bool:
        with self._lock:
            return self._summaries.pop(session_id, None) is not None


_store: BrainstormStore | None = None


def get_store() -> BrainstormStore:
    global _store
    if _store is not None:
        return _store
    from .events import get_event_bus

    impl = os.getenv("BRAINSTORM_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .store_mongo import MongoBrainstormStore

        _store = MongoBrainstormStore(bus=get_event_bus())
        return _store
    _store = InMemoryBrainstormStore(bus=get_event_bus())
    return _store


def reset_store(store: Optional[BrainstormStore] = None) -> None:
    global _store
    _store = store
