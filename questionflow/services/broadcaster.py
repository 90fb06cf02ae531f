"""
Session Room Broadcaster

Keeps an explicit  session id -> {connection id: subscriber}  map and
delivers events to exactly one room.  The broadcaster knows nothing about
WebSockets: a subscriber is anything with a non-blocking
``deliver(event, payload) -> bool``.

All methods are synchronous.  Under the asyncio event loop a join, leave or
broadcast therefore runs to completion without interleaving, and events
broadcast to a room reach each subscriber's queue in emission order.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger("questionflow.rooms")


class Subscriber(Protocol):
    def deliver(self, event: str, payload: Any) -> bool:
        """Queue an event for this connection; False when it cannot accept more."""
        ...


class QueueSubscriber:
    """Subscriber backed by a bounded FIFO queue, drained by a transport task."""

    def __init__(self, connection_id: str, maxsize: int = 256):
        self.connection_id = connection_id
        self.queue: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.overflowed = False

    def deliver(self, event: str, payload: Any) -> bool:
        try:
            self.queue.put_nowait((event, payload))
        except asyncio.QueueFull:
            self.overflowed = True
            return False
        return True

    async def next_event(self) -> Tuple[str, Any]:
        return await self.queue.get()


class RoomBroadcaster:
    """Fan-out of session events to the connections joined to that session."""

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Subscriber]] = {}
        self._memberships: Dict[str, Set[str]] = {}

    # ── Membership ──────────────────────────────────────────

    def join(self, connection_id: str, session_id: str, subscriber: Subscriber) -> None:
        room_key = str(session_id)
        room = self._rooms.setdefault(room_key, {})
        room[connection_id] = subscriber
        self._memberships.setdefault(connection_id, set()).add(room_key)
        logger.info(f"Connection {connection_id} joined session {room_key} ({len(room)} in room)")

        self._emit(room_key, "user-joined", {"connectionId": connection_id},
                   exclude=connection_id)

    def leave(self, connection_id: str, session_id: str) -> bool:
        room_key = str(session_id)
        room = self._rooms.get(room_key)
        if room is None or connection_id not in room:
            return False
        del room[connection_id]
        if not room:
            del self._rooms[room_key]

        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_key)
            if not rooms:
                del self._memberships[connection_id]
        logger.info(f"Connection {connection_id} left session {room_key}")
        return True

    def disconnect(self, connection_id: str) -> List[str]:
        """Forced leave from every room; returns the rooms that were left."""
        rooms = sorted(self._memberships.get(connection_id, ()))
        for room_key in rooms:
            self.leave(connection_id, room_key)
        return rooms

    # ── Delivery ────────────────────────────────────────────

    def broadcast(self, session_id: str, event: str, payload: Any) -> int:
        """Deliver ``payload`` to every member of the session room."""
        delivered = self._emit(str(session_id), event, payload)
        logger.info(f"Emitted {event} to session {session_id} ({delivered} recipient(s))")
        return delivered

    def _emit(
        self, room_key: str, event: str, payload: Any, exclude: Optional[str] = None,
    ) -> int:
        room = self._rooms.get(room_key)
        if not room:
            return 0

        delivered = 0
        stalled = []
        for connection_id, subscriber in list(room.items()):
            if connection_id == exclude:
                continue
            if subscriber.deliver(event, payload):
                delivered += 1
            else:
                stalled.append(connection_id)

        for connection_id in stalled:
            logger.warning(f"Dropping stalled connection {connection_id} from all rooms")
            self.disconnect(connection_id)
        return delivered

    # ── Introspection ───────────────────────────────────────

    def members(self, session_id: str) -> List[str]:
        return sorted(self._rooms.get(str(session_id), {}))

    def rooms_of(self, connection_id: str) -> List[str]:
        return sorted(self._memberships.get(connection_id, ()))

    def room_count(self) -> int:
        return len(self._rooms)
