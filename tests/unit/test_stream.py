"""
Unit tests for EventBroadcaster.

Tests:
- SSE encoding and heartbeat format
- Fan-out by event type
- Replay of recent events to new subscribers
- Bounded queues drop the oldest event
"""

import json

import pytest

from mochimap.api.stream import EventBroadcaster, StreamEvent, heartbeat
from mochimap.config import ApiConfig
from mochimap.metrics import StreamMetrics


def decode(event):
    return json.loads(event.data)


class TestEncoding:
    """Test wire format."""

    def test_event_encoding(self):
        event = StreamEvent(1, "2024-01-01T00:00:00.000Z", "block", '{"eventType": "block"}')
        assert event.encode() == b'id: 2024-01-01T00:00:00.000Z\ndata: {"eventType": "block"}\n\n'

    def test_heartbeat_is_comment(self):
        beat = heartbeat()
        assert beat.startswith(b": ")
        assert beat.endswith(b"Z\n\n")

    def test_payload_carries_event_type(self):
        broadcaster = EventBroadcaster()
        broadcaster.emit({'bnum': 5}, 'block')
        event = broadcaster.recent('block')[0]
        assert decode(event) == {'eventType': 'block', 'bnum': 5}


class TestFanOut:
    """Test subscriber delivery."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_wanted_types_only(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe(['block'])
        broadcaster.emit({'txid': 'a'}, 'transaction')
        broadcaster.emit({'bnum': 1}, 'block')

        event = await sub.get(timeout=0.1)
        assert event.event_type == 'block'
        assert await sub.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_empty_selection_means_all(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe([])
        broadcaster.emit({}, 'network')
        assert (await sub.get(timeout=0.1)).event_type == 'network'

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            EventBroadcaster().subscribe(['blocks'])

    def test_unsubscribe(self):
        metrics = StreamMetrics()
        broadcaster = EventBroadcaster(metrics=metrics)
        sub = broadcaster.subscribe(['block'])
        assert metrics.subscribers == 1
        broadcaster.unsubscribe(sub)
        broadcaster.emit({}, 'block')
        assert broadcaster.subscriber_count == 0
        assert sub.queue.empty()


class TestReplay:
    """Test recent event replay."""

    @pytest.mark.asyncio
    async def test_last_events_replayed_in_order(self):
        broadcaster = EventBroadcaster(ApiConfig(replay_events=5))
        for bnum in range(8):
            broadcaster.emit({'bnum': bnum}, 'block')
        broadcaster.emit({'txid': 'x'}, 'transaction')

        sub = broadcaster.subscribe(['block', 'transaction'])
        received = []
        while not sub.queue.empty():
            received.append(decode(await sub.get()))

        assert [e.get('bnum') for e in received[:-1]] == [3, 4, 5, 6, 7]
        assert received[-1]['txid'] == 'x'


class TestBackpressure:
    """Test bounded subscriber queues."""

    @pytest.mark.asyncio
    async def test_oldest_event_dropped(self):
        metrics = StreamMetrics()
        broadcaster = EventBroadcaster(ApiConfig(subscriber_queue_size=2), metrics)
        sub = broadcaster.subscribe(['block'])
        for bnum in range(3):
            broadcaster.emit({'bnum': bnum}, 'block')

        assert [decode(await sub.get())['bnum'] for _ in range(2)] == [1, 2]
        assert sub.dropped == 1
        assert metrics.dropped_events == 1
        assert metrics.events_emitted == 3
