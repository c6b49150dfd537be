"""Per-conversation broadcast rooms drained by the transport layer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping
from uuid import uuid4

from ragchat.metrics.observability import get_logger


class EventType(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    STREAM_START = "stream_start"
    STREAM_CHUNK = "stream_chunk"
    STREAM_COMPLETE = "stream_complete"
    STREAM_ERROR = "stream_error"
    TYPING = "typing"


@dataclass(frozen=True)
class RoomEvent:
    type: EventType
    conversation_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "conversation_id": self.conversation_id, **self.payload}


_CLOSED = None


class Subscription:
    """One subscriber's bounded queue of room events.

    Iterating yields events until the subscription leaves its room.
    """

    def __init__(self, broker: "RoomBroker", conversation_id: str, maxsize: int) -> None:
        self.subscription_id = uuid4().hex
        self.conversation_id = conversation_id
        self._broker = broker
        self._queue: asyncio.Queue[RoomEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: RoomEvent | None) -> bool:
        """Enqueue without blocking; a full queue drops its oldest event."""

        dropped = False
        if self._queue.full():
            self._queue.get_nowait()
            dropped = True
        self._queue.put_nowait(item)
        return dropped

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._offer(_CLOSED)

    async def get(self) -> RoomEvent | None:
        """Wait for the next event; None once the subscription has left."""

        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def drain(self) -> List[RoomEvent]:
        """Return every event queued so far without waiting."""

        events: List[RoomEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events

    def leave(self) -> None:
        self._broker.leave(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RoomEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.leave()


class RoomBroker:
    """Fans events out to every subscriber currently joined to a conversation.

    Publishing never blocks, so a slow subscriber cannot stall a turn; leaving a
    room never cancels the turn that produces its events.
    """

    def __init__(self, queue_size: int = 1000) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self._queue_size = queue_size
        self._rooms: Dict[str, Dict[str, Subscription]] = {}
        self._logger = get_logger("rooms")

    def join(self, conversation_id: str) -> Subscription:
        subscription = Subscription(self, conversation_id, self._queue_size)
        self._rooms.setdefault(conversation_id, {})[subscription.subscription_id] = subscription
        self._logger.info("room.join", conversation_id=conversation_id, subscription_id=subscription.subscription_id)
        return subscription

    def leave(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.conversation_id)
        if room is not None:
            room.pop(subscription.subscription_id, None)
            if not room:
                del self._rooms[subscription.conversation_id]
        subscription._close()
        self._logger.info(
            "room.leave",
            conversation_id=subscription.conversation_id,
            subscription_id=subscription.subscription_id,
        )

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._rooms.get(conversation_id, {}))

    def publish(self, conversation_id: str, event_type: EventType, payload: Mapping[str, Any] | None = None) -> int:
        """Deliver an event to the room's current subscribers; returns how many received it."""

        event = RoomEvent(type=event_type, conversation_id=conversation_id, payload=dict(payload or {}))
        subscribers = list(self._rooms.get(conversation_id, {}).values())
        for subscription in subscribers:
            if subscription._offer(event):
                self._logger.warning(
                    "room.overflow",
                    conversation_id=conversation_id,
                    subscription_id=subscription.subscription_id,
                )
        return len(subscribers)
