import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Set

log = logging.getLogger("broadcast")

@dataclass(frozen=True)
class Event:
    type: str
    data: Any

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data)}\n\n"

    def to_json(self) -> str:
        return json.dumps({"event": self.type, "data": self.data})

class SubscriberClosed(ConnectionError):
    pass

class Subscriber:
    """One live dashboard connection; events wait in a bounded buffer until the stream picks them up."""

    def __init__(self, maxsize: int = 64) -> None:
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def send(self, event: Event) -> None:
        if self.closed:
            raise SubscriberClosed("subscriber is closed")
        self.queue.put_nowait(event)

    async def next(self, timeout: float | None = None) -> Event:
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        self.closed = True

class Broadcaster:
    """
    Fan-out of live events. Publishing never waits on a subscriber: a full
    buffer drops the event for that subscriber only, a closed one is removed.
    No replay for late subscribers.
    """

    def __init__(self, buffer: int = 64) -> None:
        self.buffer = buffer
        self.subscribers: Set[Subscriber] = set()
        self._lock = threading.Lock()

    def subscribe(self) -> Subscriber:
        sub = Subscriber(self.buffer)
        with self._lock:
            self.subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        sub.close()
        with self._lock:
            self.subscribers.discard(sub)

    def __len__(self) -> int:
        with self._lock:
            return len(self.subscribers)

    def publish(self, event_type: str, data: Any) -> int:
        event = Event(event_type, data)
        with self._lock:
            targets = list(self.subscribers)
        delivered = 0
        for sub in targets:
            try:
                sub.send(event)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                log.warning("[SSE] subscriber too slow, dropped %s event (%d dropped so far)", event_type, sub.dropped)
            except Exception as e:
                log.warning("[SSE] write error, removing subscriber: %s", e)
                self.unsubscribe(sub)
        return delivered
