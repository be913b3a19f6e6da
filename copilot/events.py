"""
Session events and a typed async channel.

Subscribers get their own bounded queue and must close() their
Subscription to stop receiving; nothing is held after close.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, List, Optional, Set, TypeVar, Union

from copilot.models import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TranscriptEvent:
    session_id: Optional[int]
    text: str
    confidence: float
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionStateEvent:
    session_id: Optional[int]
    state: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class SessionErrorEvent:
    session_id: Optional[int]
    error: str
    failures: int


SessionEvent = Union[TranscriptEvent, SessionStateEvent, SessionErrorEvent]


class Subscription(Generic[T]):
    """Handle returned by EventChannel.subscribe(); iterate or drain() it."""

    def __init__(self, channel: "EventChannel[T]", maxsize: int):
        self._channel = channel
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _deliver(self, event: T):
        if self._queue.full():
            # Slow subscriber: drop the oldest event
            self._queue.get_nowait()
            logger.warning("Event subscriber queue full; dropping oldest event")
        self._queue.put_nowait(event)

    async def get(self) -> T:
        return await self._queue.get()

    def drain(self) -> List[T]:
        """Return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self):
        if not self.closed:
            self.closed = True
            self._channel._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class EventChannel(Generic[T]):
    """Fan-out channel; publish() never blocks the publisher."""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._subscribers: Set[Subscription[T]] = set()

    def subscribe(self) -> Subscription[T]:
        subscription = Subscription(self, self.maxsize)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]):
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: T):
        for subscription in list(self._subscribers):
            subscription._deliver(event)
