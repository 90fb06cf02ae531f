"""
Realtime channel: one WebSocket per viewer.

Frames are JSON objects ``{"event": <name>, "data": <payload>}``.

client → server
  join-session   {"sessionId": "<id or code>"}  (a bare string is accepted too)
  leave-session  {"sessionId": "<id or code>"}

server → client
  connected, joined, left, error, and every session event:
  new-doubt, doubt-merged, doubt-answered, doubt-upvoted,
  confusion-updated, user-joined, session-ended
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from questionflow.api.deps import Services, get_services
from questionflow.core.config import get_settings
from questionflow.core.errors import QuestionFlowError
from questionflow.services.broadcaster import QueueSubscriber

logger = logging.getLogger("questionflow.realtime")

router = APIRouter()


def _session_ref(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        value = data.get("sessionId")
        return value if isinstance(value, str) else None
    return None


# "Try again later": sent to a viewer whose outbound queue overflowed
SLOW_CONSUMER_CLOSE_CODE = 1013


async def _pump(websocket: WebSocket, subscriber: QueueSubscriber, services: Services) -> None:
    """Send queued events in order until the socket goes away or falls behind."""
    try:
        while True:
            event, payload = await subscriber.next_event()
            if subscriber.overflowed:
                logger.warning(f"Closing {subscriber.connection_id}: outbound queue overflowed")
                services.broadcaster.disconnect(subscriber.connection_id)
                await websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
                return
            await websocket.send_json({"event": event, "data": payload})
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Send loop for {subscriber.connection_id} stopped: {e}")
        services.broadcaster.disconnect(subscriber.connection_id)


class RealtimeConnection:
    """Handles the control frames of one WebSocket connection."""

    def __init__(self, websocket: WebSocket, services: Services, queue_size: int):
        self.websocket = websocket
        self.services = services
        self.connection_id = uuid.uuid4().hex
        self.subscriber = QueueSubscriber(self.connection_id, maxsize=queue_size)

    def send(self, event: str, payload: Any) -> None:
        self.subscriber.deliver(event, payload)

    async def handle_join(self, data: Any) -> None:
        ref = _session_ref(data)
        if not ref:
            self.send("error", {"error": "bad_request", "message": "sessionId is required"})
            return
        try:
            session = await self.services.facade.get_session(ref)
        except QuestionFlowError as e:
            self.send("error", e.to_dict())
            return
        self.services.broadcaster.join(self.connection_id, session.id, self.subscriber)
        self.send("joined", {"sessionId": session.id, "code": session.code})

    async def handle_leave(self, data: Any) -> None:
        ref = _session_ref(data)
        if not ref:
            self.send("error", {"error": "bad_request", "message": "sessionId is required"})
            return
        try:
            session_id = self.services.facade.resolver.resolve(ref)
        except QuestionFlowError as e:
            self.send("error", e.to_dict())
            return
        self.services.broadcaster.leave(self.connection_id, session_id)
        self.send("left", {"sessionId": session_id})

    async def handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            self.send("error", {"error": "bad_request", "message": "Frames must be JSON"})
            return
        if not isinstance(frame, dict):
            self.send("error", {"error": "bad_request", "message": "Frames must be JSON objects"})
            return

        event = frame.get("event")
        if event == "join-session":
            await self.handle_join(frame.get("data"))
        elif event == "leave-session":
            await self.handle_leave(frame.get("data"))
        else:
            self.send("error", {"error": "unknown_event", "message": f"Unknown event: {event}"})

    async def run(self) -> None:
        sender = asyncio.create_task(_pump(self.websocket, self.subscriber, self.services))
        self.send("connected", {"connectionId": self.connection_id})
        try:
            while True:
                raw = await self.websocket.receive_text()
                await self.handle_frame(raw)
        except WebSocketDisconnect:
            logger.info(f"Connection {self.connection_id} disconnected")
        finally:
            # Abrupt disconnect is a forced leave from every room
            self.services.broadcaster.disconnect(self.connection_id)
            sender.cancel()


@router.websocket("/ws")
async def realtime_channel(websocket: WebSocket):
    services = get_services(websocket)
    await websocket.accept()
    connection = RealtimeConnection(websocket, services, get_settings().WS_SEND_QUEUE_SIZE)
    await connection.run()
