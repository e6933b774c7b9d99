from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Query, WebSocket
from starlette.websockets import WebSocketDisconnect

from ...errors import SessionNotFound
from ...infrastructure.events import private_topic, session_topics
from ...security.auth import user_from_query_token
from ...services.session_service import get_session_service


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sessions", tags=["realtime"])

WS_UNAUTHORIZED = 4401
WS_NOT_FOUND = 4404
WS_SEND_FAILED = 1011
WS_BACKLOG_FULL = 1013

FEED_BACKLOG = 256


class FeedBuffer:
    """Bounded backlog of events for one connection."""

    def __init__(self, maxsize: int = FEED_BACKLOG) -> None:
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.overflowed = asyncio.Event()

    def offer(self, payload: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.overflowed.set()


async def relay(websocket: Any, buffer: FeedBuffer) -> Optional[int]:
    """Send buffered events until the client leaves, a send fails or the backlog overflows.

    Returns the close code used, or ``None`` when the client went away first.
    """

    async def pump() -> None:
        while True:
            await websocket.send_json(await buffer.queue.get())

    async def listen() -> None:
        # Client frames are read only to notice disconnects.
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(pump())
    listener = asyncio.create_task(listen())
    overflow = asyncio.create_task(buffer.overflowed.wait())
    try:
        done, _ = await asyncio.wait({sender, listener, overflow}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sender, listener, overflow):
            task.cancel()
        await asyncio.gather(sender, listener, overflow, return_exceptions=True)

    if listener in done:
        exc = listener.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            logger.warning("ws_receive_failed", extra={"err": str(exc)})
        return None

    if overflow in done:
        code = WS_BACKLOG_FULL
        logger.warning("ws_backlog_full", extra={"backlog": buffer.queue.maxsize})
    else:
        code = WS_SEND_FAILED
        logger.warning("ws_send_failed", extra={"err": str(sender.exception())})
    try:
        await websocket.close(code=code)
    except RuntimeError as exc:
        logger.info("ws_close_skipped", extra={"err": str(exc)})
    return code


@router.websocket("/{slug}/feed")
async def session_feed(websocket: WebSocket, slug: str, token: Optional[str] = Query(None)) -> None:
    """Stream change notifications for one session to a connected participant.

    Shared topics (messages, nodes, edges, status) plus the caller's own
    private thread. A client that stops reading is disconnected.
    """
    user = user_from_query_token(token)
    if user is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    service = get_session_service()
    try:
        session = await service.resolve(slug)
    except SessionNotFound:
        await websocket.close(code=WS_NOT_FOUND)
        return

    buffer = FeedBuffer()
    topics = session_topics(session.session_id) + [private_topic(session.session_id, user.user_id)]
    # Subscribe before the handshake completes.
    unsubscribers = [service.bus.subscribe(topic, buffer.offer) for topic in topics]
    try:
        await websocket.accept()
        logger.info("ws_connected", extra={"session_id": session.session_id, "user_id": user.user_id})
        code = await relay(websocket, buffer)
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
    logger.info(
        "ws_disconnected",
        extra={"session_id": session.session_id, "user_id": user.user_id, "close_code": code},
    )
