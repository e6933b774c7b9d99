from __future__ import annotations

import inspect
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore


logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
Callback = Callable[[Payload], Union[Awaitable[None], None]]


def messages_topic(session_id: str) -> str:
    return f"session:{session_id}:messages"


def nodes_topic(session_id: str) -> str:
    return f"session:{session_id}:concept_nodes"


def edges_topic(session_id: str) -> str:
    return f"session:{session_id}:concept_edges"


def status_topic(session_id: str) -> str:
    return f"session:{session_id}:status"


def private_topic(session_id: str, user_id: str) -> str:
    return f"session:{session_id}:private:{user_id}"


def session_topics(session_id: str) -> List[str]:
    """Shared topics every participant of a session may follow."""
    return [
        messages_topic(session_id),
        nodes_topic(session_id),
        edges_topic(session_id),
        status_topic(session_id),
    ]


CHANNEL_PREFIX = "brainstorm.events."


class _RedisPublisher:
    """Best-effort mirror of bus payloads onto Redis pub/sub.

    The client is created on first use and dropped after any failure so the
    next publish reconnects; a Redis outage never reaches the writer.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Any = None

    def _client_or_none(self) -> Any:
        if self._client is None and redis is not None:
            try:
                client = redis.Redis.from_url(self._url, socket_timeout=0.5)
                client.ping()
            except Exception as exc:
                logger.debug("redis_unavailable", extra={"err": str(exc)})
            else:
                self._client = client
        return self._client

    def publish(self, channel: str, payload: Payload) -> None:
        client = self._client_or_none()
        if client is None:
            return
        try:
            client.publish(channel, json.dumps(payload, default=str))
        except Exception:
            logger.warning("redis_publish_failed", extra={"channel": channel})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is None and os.getenv("REDIS_URL"):
        _publisher = _RedisPublisher(os.environ["REDIS_URL"])
    return _publisher


def publish_event(topic: str, payload: Payload) -> None:
    """Mirror a change notification onto Redis for out-of-process listeners."""
    publisher = _get_publisher()
    if publisher is not None:
        publisher.publish(CHANNEL_PREFIX + topic, payload)


class EventBus:
    """In-process change notification bus keyed by per-session topics.

    Callbacks receive ``{"topic", "event", "row"}`` where ``event`` is one of
    ``insert``, ``update`` or ``delete``. A failing subscriber is logged and
    skipped; it never affects the writer or the other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callback]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        self._subscribers.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(topic, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(topic, None)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def publish(self, topic: str, event: str, row: Dict[str, Any]) -> None:
        payload: Payload = {"topic": topic, "event": event, "row": row}
        for callback in list(self._subscribers.get(topic, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("event_subscriber_failed topic=%s", topic)
        publish_event(topic, payload)


_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus
