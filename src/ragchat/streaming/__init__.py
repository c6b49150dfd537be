"""Conversation rooms and turn coordination."""

from .coordinator import (
    CoordinatorConfig,
    StreamingCoordinator,
    TurnRecord,
    TurnState,
)
from .rooms import EventType, RoomBroker, RoomEvent, Subscription

__all__ = [
    "CoordinatorConfig",
    "EventType",
    "RoomBroker",
    "RoomEvent",
    "StreamingCoordinator",
    "Subscription",
    "TurnRecord",
    "TurnState",
]
