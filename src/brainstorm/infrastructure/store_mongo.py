from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional

try:  # pragma: no cover - optional dependency
    from motor.motor_asyncio import AsyncIOMotorClient  # type: ignore
    from pymongo import ReturnDocument  # type: ignore
except Exception:  # pragma: no cover - dependency optional
    AsyncIOMotorClient = None  # type: ignore[misc]
    ReturnDocument = None  # type: ignore[misc]

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
from ..errors import SessionNotFound, StoreError
from .events import EventBus, edges_topic, messages_topic, nodes_topic, private_topic, status_topic
from .store import InMemoryBrainstormStore, new_id, new_slug, node_patch, now_iso


logger = logging.getLogger(__name__)


class MongoBrainstormStore:
    """MongoDB implementation of the brainstorm store.

    Connection is checked lazily on first use. When motor is missing or the
    server cannot be reached at that point, every call is served by an
    in-memory store for the lifetime of the process. Errors after a
    successful connection are raised as ``StoreError``.
    """

    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self._bus = bus
        self._fallback: Optional[InMemoryBrainstormStore] = None
        self._client = None
        self._db = None
        self._ready = False
        self._url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self._db_name = os.getenv("MONGO_DB", "brainstorm")

    async def _connect(self) -> None:
        if self._ready or self._fallback is not None:
            return
        if AsyncIOMotorClient is None:
            logger.warning("motor not installed; using in-memory store")
            self._fallback = InMemoryBrainstormStore(bus=self._bus)
            return
        try:
            self._client = AsyncIOMotorClient(self._url, serverSelectionTimeoutMS=500)
            await self._client.server_info()
            db = self._client[self._db_name]
            await db["sessions"].create_index("session_id", unique=True)
            await db["sessions"].create_index("slug", unique=True)
            await db["messages"].create_index([("session_id", 1), ("created_at", 1)])
            await db["participants"].create_index([("session_id", 1), ("user_id", 1)], unique=True)
            await db["concept_nodes"].create_index("session_id")
            await db["concept_nodes"].create_index("node_id", unique=True)
            await db["concept_edges"].create_index("session_id")
            await db["private_messages"].create_index([("session_id", 1), ("user_id", 1), ("created_at", 1)])
            await db["private_threads"].create_index([("session_id", 1), ("user_id", 1)], unique=True)
            await db["session_summaries"].create_index("session_id", unique=True)
            self._db = db
            self._ready = True
        except Exception as exc:
            logger.warning("mongo_unavailable_using_memory", extra={"url": self._url, "err": str(exc)})
            self._client = None
            self._fallback = InMemoryBrainstormStore(bus=self._bus)

    async def _backend(self) -> Optional[InMemoryBrainstormStore]:
        await self._connect()
        return self._fallback

    async def _publish(self, topic: str, event: str, row: Dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.publish(topic, event, row)

    def _col(self, name: str):
        return self._db[name]  # type: ignore[index]

    @staticmethod
    def _clean(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not doc:
            return None
        data = dict(doc)
        data.pop("_id", None)
        return data

    async def _guard(self, awaitable):
        try:
            return await awaitable
        except SessionNotFound:
            raise
        except KeyError:
            raise
        except Exception as exc:
            raise StoreError(str(exc)) from exc

    async def _require_session(self, session_id: str) -> Session:
        doc = await self._guard(self._col("sessions").find_one({"session_id": session_id}))
        if not doc:
            raise SessionNotFound(session_id)
        return Session(**self._clean(doc))

    # Sessions -----------------------------------------------------------
    async def create_session(self, title: str, goal: Optional[str], created_by: str) -> Session:
        fallback = await self._backend()
        if fallback:
            return await fallback.create_session(title, goal, created_by)
        sess = Session(
            session_id=new_id(),
            title=title.strip(),
            goal=(goal or "").strip() or None,
            slug=new_slug(),
            created_by=created_by,
            created_at=now_iso(),
        )
        await self._guard(self._col("sessions").insert_one(sess.model_dump(mode="json")))
        return sess

    async def get_session(self, session_id: str) -> Optional[Session]:
        fallback = await self._backend()
        if fallback:
            return await fallback.get_session(session_id)
        doc = await self._guard(self._col("sessions").find_one({"session_id": session_id}))
        return Session(**self._clean(doc)) if doc else None

    async def get_session_by_slug(self, slug: str) -> Optional[Session]:
        fallback = await self._backend()
        if fallback:
            return await fallback.get_session_by_slug(slug)
        doc = await self._guard(self._col("sessions").find_one({"slug": slug}))
        return Session(**self._clean(doc)) if doc else None

    async def mark_session_ended(self, session_id: str) -> Session:
        fallback = await self._backend()
        if fallback:
            return await fallback.mark_session_ended(session_id)
        updated = await self._guard(
            self._col("sessions").find_one_and_update(
                {"session_id": session_id, "status": SessionStatus.ACTIVE.value},
                {"$set": {"status": SessionStatus.ENDED.value}},
                return_document=ReturnDocument.AFTER,
            )
        )
        if updated:
            sess = Session(**self._clean(updated))
            await self._publish(status_topic(session_id), "update", sess.model_dump(mode="json"))
            return sess
        return await self._require_session(session_id)

    async def claim_threshold(self, session_id: str, marker: str) -> bool:
        fallback = await self._backend()
        if fallback:
            return await fallback.claim_threshold(session_id, marker)
        result = await self._guard(
            self._col("sessions").update_one(
                {"session_id": session_id, "triggered_thresholds": {"$ne": marker}},
                {"$addToSet": {"triggered_thresholds": marker}},
            )
        )
        if result.modified_count:
            return True
        await self._require_session(session_id)
        return False

    # Messages -----------------------------------------------------------
    async def add_message(
        self,
        session_id: str,
        content: str,
        speaker: Speaker,
        author_id: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> Message:
        fallback = await self._backend()
        if fallback:
            return await fallback.add_message(session_id, content, speaker, author_id, is_anonymous)
        await self._require_session(session_id)
        last = await self._guard(
            self._col("messages").find_one({"session_id": session_id}, sort=[("created_at", -1)])
        )
        stamp = now_iso()
        if last and stamp <= last.get("created_at", ""):
            # Same microsecond as the tail; nudge forward to keep ordering strict.
            stamp = _bump(last["created_at"])
        msg = Message(
            message_id=new_id(),
            session_id=session_id,
            content=content,
            speaker=speaker,
            created_at=stamp,
            author_id=author_id,
            is_anonymous=is_anonymous,
        )
        await self._guard(self._col("messages").insert_one(msg.model_dump(mode="json")))
        await self._publish(messages_topic(session_id), "insert", msg.public())
        return msg

    async def list_messages(self, session_id: str) -> List[Message]:
        fallback = await self._backend()
        if fallback:
            return await fallback.list_messages(session_id)
        cursor = self._col("messages").find({"session_id": session_id}).sort("created_at", 1)
        docs = await self._guard(cursor.to_list(length=None))
        return [Message(**self._clean(doc)) for doc in docs]

    async def count_messages(self, session_id: str) -> int:
        fallback = await self._backend()
        if fallback:
            return await fallback.count_messages(session_id)
        return int(await self._guard(self._col("messages").count_documents({"session_id": session_id})))

    # Participants -------------------------------------------------------
    async def upsert_participant(self, session_id: str, user_id: str, display_name: str) -> Participant:
        fallback = await self._backend()
        if fallback:
            return await fallback.upsert_participant(session_id, user_id, display_name)
        await self._require_session(session_id)
        doc = await self._guard(
            self._col("participants").find_one_and_update(
                {"session_id": session_id, "user_id": user_id},
                {
                    "$setOnInsert": {
                        "session_id": session_id,
                        "user_id": user_id,
                        "display_name": display_name,
                        "joined_at": now_iso(),
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        )
        return Participant(**self._clean(doc))

    async def list_participants(self, session_id: str) -> List[Participant]:
        fallback = await self._backend()
        if fallback:
            return await fallback.list_participants(session_id)
        cursor = self._col("participants").find({"session_id": session_id}).sort("joined_at", 1)
        docs = await self._guard(cursor.to_list(length=None))
        return [Participant(**self._clean(doc)) for doc in docs]

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
        fallback = await self._backend()
        if fallback:
            return await fallback.create_node(session_id, label, x, y, speaker, message_id)
        await self._require_session(session_id)
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
        row = node.model_dump(mode="json")
        await self._guard(self._col("concept_nodes").insert_one(dict(row)))
        await self._publish(nodes_topic(session_id), "insert", row)
        return node

    async def list_nodes(self, session_id: str) -> List[ConceptNode]:
        fallback = await self._backend()
        if fallback:
            return await fallback.list_nodes(session_id)
        cursor = self._col("concept_nodes").find({"session_id": session_id}).sort("created_at", 1)
        docs = await self._guard(cursor.to_list(length=None))
        return [ConceptNode(**self._clean(doc)) for doc in docs]

    async def find_nodes_by_labels(self, session_id: str, labels: Iterable[str]) -> List[ConceptNode]:
        fallback = await self._backend()
        if fallback:
            return await fallback.find_nodes_by_labels(session_id, labels)
        wanted = {label.strip().lower() for label in labels if label and label.strip()}
        if not wanted:
            return []
        nodes = await self.list_nodes(session_id)
        return [n for n in nodes if n.label.strip().lower() in wanted]

    async def get_node(self, node_id: str) -> Optional[ConceptNode]:
        fallback = await self._backend()
        if fallback:
            return await fallback.get_node(node_id)
        doc = await self._guard(self._col("concept_nodes").find_one({"node_id": node_id}))
        return ConceptNode(**self._clean(doc)) if doc else None

    async def update_node(self, node_id: str, changes: Dict[str, Any]) -> ConceptNode:
        fallback = await self._backend()
        if fallback:
            return await fallback.update_node(node_id, changes)
        patch = node_patch(changes)
        doc = await self._guard(
            self._col("concept_nodes").find_one_and_update(
                {"node_id": node_id},
                {"$set": patch} if patch else {"$setOnInsert": {}},
                return_document=ReturnDocument.AFTER,
            )
        )
        if not doc:
            raise KeyError("Node not found")
        node = ConceptNode(**self._clean(doc))
        await self._publish(nodes_topic(node.session_id), "update", node.model_dump(mode="json"))
        return node

    async def delete_node(self, node_id: str) -> bool:
        fallback = await self._backend()
        if fallback:
            return await fallback.delete_node(node_id)
        node = await self.get_node(node_id)
        if not node:
            return False
        query = {"$or": [{"source_node_id": node_id}, {"target_node_id": node_id}]}
        edges = await self._guard(self._col("concept_edges").find(query).to_list(length=None))
        await self._guard(self._col("concept_edges").delete_many(query))
        await self._guard(self._col("concept_nodes").delete_one({"node_id": node_id}))
        for doc in edges:
            await self._publish(edges_topic(node.session_id), "delete", self._clean(doc) or {})
        await self._publish(nodes_topic(node.session_id), "delete", node.model_dump(mode="json"))
        return True

    async def create_edge(self, session_id: str, source_node_id: str, target_node_id: str) -> ConceptEdge:
        fallback = await self._backend()
        if fallback:
            return await fallback.create_edge(session_id, source_node_id, target_node_id)
        for nid in (source_node_id, target_node_id):
            node = await self.get_node(nid)
            if not node or node.session_id != session_id:
                raise KeyError("Node not found")
        edge = ConceptEdge(
            edge_id=new_id(),
            session_id=session_id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            created_at=now_iso(),
        )
        row = edge.model_dump(mode="json")
        await self._guard(self._col("concept_edges").insert_one(dict(row)))
        await self._publish(edges_topic(session_id), "insert", row)
        return edge

    async def list_edges(self, session_id: str) -> List[ConceptEdge]:
        fallback = await self._backend()
        if fallback:
            return await fallback.list_edges(session_id)
        cursor = self._col("concept_edges").find({"session_id": session_id}).sort("created_at", 1)
        docs = await self._guard(cursor.to_list(length=None))
        return [ConceptEdge(**self._clean(doc)) for doc in docs]

    async def delete_edge(self, edge_id: str) -> bool:
        fallback = await self._backend()
        if fallback:
            return await fallback.delete_edge(edge_id)
        doc = await self._guard(self._col("concept_edges").find_one_and_delete({"edge_id": edge_id}))
        if not doc:
            return False
        edge = ConceptEdge(**self._clean(doc))
        await self._publish(edges_topic(edge.session_id), "delete", edge.model_dump(mode="json"))
        return True

    # Private side-channel ----------------------------------------------
    async def add_private_message(
        self, session_id: str, user_id: str, content: str, origin: PrivateOrigin
    ) -> PrivateMessage:
        fallback = await self._backend()
        if fallback:
            return await fallback.add_private_message(session_id, user_id, content, origin)
        await self._require_session(session_id)
        last = await self._guard(
            self._col("private_messages").find_one(
                {"session_id": session_id, "user_id": user_id}, sort=[("created_at", -1)]
            )
        )
        stamp = now_iso()
        if last and stamp <= last.get("created_at", ""):
            stamp = _bump(last["created_at"])
        msg = PrivateMessage(
            private_message_id=new_id(),
            session_id=session_id,
            user_id=user_id,
            content=content,
            origin=origin,
            created_at=stamp,
        )
        row = msg.model_dump(mode="json")
        await self._guard(self._col("private_messages").insert_one(dict(row)))
        await self._publish(private_topic(session_id, user_id), "insert", row)
        return msg

    async def list_private_messages(self, session_id: str, user_id: str) -> List[PrivateMessage]:
        fallback = await self._backend()
        if fallback:
            return await fallback.list_private_messages(session_id, user_id)
        cursor = (
            self._col("private_messages")
            .find({"session_id": session_id, "user_id": user_id})
            .sort("created_at", 1)
        )
        docs = await self._guard(cursor.to_list(length=None))
        return [PrivateMessage(**self._clean(doc)) for doc in docs]

    async def get_thread(self, session_id: str, user_id: str) -> PrivateThread:
        fallback = await self._backend()
        if fallback:
            return await fallback.get_thread(session_id, user_id)
        doc = await self._guard(
            self._col("private_threads").find_one({"session_id": session_id, "user_id": user_id})
        )
        if doc:
            return PrivateThread(**self._clean(doc))
        return PrivateThread(session_id=session_id, user_id=user_id)

    async def set_thread_state(self, session_id: str, user_id: str, state: ThreadState) -> PrivateThread:
        fallback = await self._backend()
        if fallback:
            return await fallback.set_thread_state(session_id, user_id, state)
        thread = PrivateThread(session_id=session_id, user_id=user_id, state=state, updated_at=now_iso())
        await self._guard(
            self._col("private_threads").replace_one(
                {"session_id": session_id, "user_id": user_id},
                thread.model_dump(mode="json"),
                upsert=True,
            )
        )
        return thread

    # Summaries ----------------------------------------------------------
    async def save_summary(self, summary: SessionSummary) -> SessionSummary:
        fallback = await self._backend()
        if fallback:
            return await fallback.save_summary(summary)
        await self._require_session(summary.session_id)
        await self._guard(
            self._col("session_summaries").replace_one(
                {"session_id": summary.session_id},
                summary.model_dump(mode="json"),
                upsert=True,
            )
        )
        return summary

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        fallback = await self._backend()
        if fallback:
            return await fallback.get_summary(session_id)
        doc = await self._guard(self._col("session_summaries").find_one({"session_id": session_id}))
        return SessionSummary(**self._clean(doc)) if doc else None

    async def delete_summary(self, session_id: str) -> bool:
        fallback = await self._backend()
        if fallback:
            return await fallback.delete_summary(session_id)
        result = await self._guard(self._col("session_summaries").delete_one({"session_id": session_id}))
        return bool(result.deleted_count)


def _bump(stamp: str) -> str:
    from datetime import datetime, timedelta

    from .store import format_ts

    parsed = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
    return format_ts(parsed + timedelta(microseconds=1))
