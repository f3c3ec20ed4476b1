"""
Event Broadcaster

Emit sink shared by the ingestors and the peer scanner, and the source of
the /stream Server-Sent-Events endpoint.

emit() never blocks: every subscriber owns a bounded queue and, when it is
full, the oldest pending event is dropped. The last few events of each type
are kept and replayed to new subscribers.
"""

import asyncio
import itertools
import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional, Set

from ..config import ApiConfig
from ..metrics import StreamMetrics

EVENT_TYPES = ('block', 'transaction', 'network')


def sse_timestamp() -> str:
    return datetime.utcnow().isoformat(timespec='milliseconds') + 'Z'


@dataclass(frozen=True)
class StreamEvent:
    seq: int
    id: str
    event_type: str
    data: str

    def encode(self) -> bytes:
        return f"id: {self.id}\ndata: {self.data}\n\n".encode()


def heartbeat() -> bytes:
    """SSE comment line keeping idle connections open."""
    return f": {sse_timestamp()}\n\n".encode()


class Subscription:
    """One SSE client: the event types it follows and its pending events."""

    def __init__(self, events: FrozenSet[str], maxsize: int):
        self.events = events
        self.queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue(maxsize)
        self.dropped = 0

    def wants(self, event_type: str) -> bool:
        return event_type in self.events

    def put(self, event: StreamEvent) -> bool:
        """Queue an event; returns False if an older one had to be dropped."""
        dropped = False
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            dropped = True
        self.queue.put_nowait(event)
        return not dropped

    async def get(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Next event, or None if none arrived within `timeout` seconds."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class EventBroadcaster:
    """
    Fan-out of emitted events to SSE subscribers.

    Usage:
        broadcaster = EventBroadcaster()
        ingestor = BlockIngestor(store, emit=broadcaster.emit)

        sub = broadcaster.subscribe(['block'])
        event = await sub.get(timeout=30)
        broadcaster.unsubscribe(sub)
    """

    def __init__(self, config: Optional[ApiConfig] = None, metrics: Optional[StreamMetrics] = None):
        self.config = config or ApiConfig()
        self.metrics = metrics or StreamMetrics()
        self._logger = logging.getLogger("EventBroadcaster")
        self._subscribers: Set[Subscription] = set()
        self._recent: Dict[str, Deque[StreamEvent]] = {
            name: deque(maxlen=self.config.replay_events) for name in EVENT_TYPES
        }
        self._seq = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, payload: Dict[str, Any], event_type: str) -> None:
        """Broadcast `payload` to every subscriber of `event_type`."""
        data = json.dumps({'eventType': event_type, **payload}, default=str)
        event = StreamEvent(next(self._seq), sse_timestamp(), event_type, data)
        self.metrics.events_emitted += 1

        recent = self._recent.get(event_type)
        if recent is not None:
            recent.append(event)

        for subscriber in list(self._subscribers):
            if subscriber.wants(event_type) and not subscriber.put(event):
                self.metrics.dropped_events += 1

    def recent(self, event_type: str) -> List[StreamEvent]:
        return list(self._recent.get(event_type, ()))

    def subscribe(self, events: Optional[Iterable[str]] = None) -> Subscription:
        """
        Register a subscriber for `events` (all types if empty).

        Cached recent events of those types are queued first, oldest first.

        Raises:
            ValueError: unknown event type
        """
        wanted = frozenset(events or EVENT_TYPES)
        unknown = wanted - set(EVENT_TYPES)
        if unknown:
            raise ValueError(f"Unknown event type(s): {', '.join(sorted(unknown))}")

        subscription = Subscription(wanted, self.config.subscriber_queue_size)
        replay = sorted(
            (e for name in wanted for e in self._recent[name]),
            key=lambda e: e.seq,
        )
        for event in replay:
            subscription.put(event)

        self._subscribers.add(subscription)
        self.metrics.subscribers = len(self._subscribers)
        self._logger.debug(f"Subscriber added ({', '.join(sorted(wanted))}); total {len(self._subscribers)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        self.metrics.subscribers = len(self._subscribers)
