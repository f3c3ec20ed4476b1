"""
MochiMap API

- EventBroadcaster: non-blocking emit sink feeding SSE subscribers
- QueryApi: read-only aiohttp query endpoints and /stream
"""

from .server import QueryApi, respond
from .stream import EVENT_TYPES, EventBroadcaster, StreamEvent, Subscription

__all__ = [
    'QueryApi',
    'respond',
    'EVENT_TYPES',
    'EventBroadcaster',
    'StreamEvent',
    'Subscription',
]
