"""
Bidirectional transport: one WebSocket per thread.

Client messages:  {"type": "message", "content": "..."}  |  {"type": "cancel"}
Server messages:  {"type": "<event type>", "content": "..."} for every turn event.

The socket stays attached across turns. Disconnecting detaches it without
cancelling the running turn; the client reconciles by re-reading history.
All outgoing frames go through the subscription queue so a single task writes
to the socket.
"""
import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from threadforge.core.runtime import Runtime
from threadforge.errors import Busy, NotFound, ValidationError
from threadforge.events import StreamEvent

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A reply is still being generated for this thread. Wait for it to finish or cancel it."


async def _pump(websocket: WebSocket, sub) -> None:
    while True:
        event = await sub.get()
        await websocket.send_json(event.to_dict())


async def serve_socket(websocket: WebSocket, runtime: Runtime, owner_id: str, thread_id: str) -> None:
    try:
        await runtime.is_processing(owner_id, thread_id)
    except NotFound:
        await websocket.close(code=4404, reason="thread not found")
        return
    await websocket.accept()

    sessions = runtime.sessions
    sub = sessions.attach(thread_id)
    pump = asyncio.create_task(_pump(websocket, sub), name=f"ws-pump-{thread_id[:8]}")
    logger.info(f"WebSocket attached to thread {thread_id}")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                frame = None
            if not isinstance(frame, dict):
                sub.queue.put_nowait(StreamEvent.error("invalid message: expected a JSON object"))
                continue

            kind = frame.get("type")
            if kind == "message":
                try:
                    await runtime.start_turn(owner_id, thread_id, frame.get("content") or "")
                except ValidationError as e:
                    sub.queue.put_nowait(StreamEvent.error(e.reason))
                except Busy:
                    sub.queue.put_nowait(StreamEvent.error(BUSY_MESSAGE))
                except NotFound as e:
                    sub.queue.put_nowait(StreamEvent.error(str(e)))
            elif kind == "cancel":
                if not sessions.request_cancel(thread_id):
                    logger.debug(f"Cancel on idle thread {thread_id} ignored")
            else:
                sub.queue.put_nowait(StreamEvent.error(f"unknown message type: {kind!r}"))
    except WebSocketDisconnect:
        logger.info(f"WebSocket detached from thread {thread_id}")
    finally:
        pump.cancel()
        await asyncio.wait({pump})
        if not pump.cancelled() and pump.exception() is not None:
            logger.debug(f"WebSocket writer for thread {thread_id} stopped: {pump.exception()!r}")
        sessions.detach(sub)
