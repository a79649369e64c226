"""Event bus for streaming negotiation events over SSE."""

import asyncio
from typing import Dict, Any, AsyncGenerator, Optional
from datetime import datetime


class EventBus:
    """
    In-memory event bus using asyncio.Queue for pub/sub pattern.

    Every subscriber belongs to one user and receives the events addressed
    to that user; events published without a user_id reach every subscriber.
    """

    def __init__(self):
        self._subscribers: list[tuple[str, asyncio.Queue]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event_type: str, data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        """
        Publish an event to matching subscribers.

        Args:
            event_type: Type of event (e.g., "offer_created", "trade_completed")
            data: Event payload data
            user_id: Recipient user, or None for a broadcast
        """
        event = {
            "type": event_type,
            "user_id": user_id,
            "data": data,
            "timestamp": datetime.utcnow().isoformat()
        }

        for subscriber_user_id, queue in list(self._subscribers):
            if user_id is not None and subscriber_user_id != user_id:
                continue
            queue.put_nowait(event)

    async def subscribe(self, user_id: str) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Subscribe to events and receive them as an async generator.

        Args:
            user_id: Only receive events addressed to this user (plus broadcasts)

        Yields:
            Event dictionaries containing type, user_id, data, and timestamp
        """
        entry: tuple[str, asyncio.Queue] = (user_id, asyncio.Queue())
        self._subscribers.append(entry)

        try:
            while True:
                yield await entry[1].get()
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)


# Global event bus instance
event_bus = EventBus()
