"""
Peer Cache

Capacity- and age-bounded mapping of peer IP -> PeerNode, backed by
cachetools.TTLCache.

An entry's age runs from the last time it was stored or touched (the last
healthy contact); lookups do not extend it. When full, the least recently
used entry is evicted first.
"""

import time
from typing import Callable, Iterator, List, Optional

import cachetools

from ..types import PeerNode


class PeerCache:
    """
    LRU + TTL cache of peer nodes.

    Usage:
        cache = PeerCache(max_size=5000, max_age=3 * 86400)
        cache.set(node.ip, node)
        node = cache.get("1.2.3.4")
    """

    def __init__(self, max_size: int = 5000, max_age: float = 3 * 24 * 60 * 60,
                 clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self.max_age = max_age
        self._entries = cachetools.TTLCache(maxsize=max_size, ttl=max_age, timer=clock)

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def __contains__(self, ip: str) -> bool:
        return ip in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def get(self, ip: str) -> Optional[PeerNode]:
        """Lookup that marks the entry as recently used."""
        return self._entries.get(ip)

    def set(self, ip: str, node: PeerNode) -> None:
        """Store (or replace) an entry and restart its age."""
        self._entries[ip] = node

    def touch(self, ip: str) -> bool:
        """Restart the age of an existing entry. False if absent or expired."""
        node = self._entries.get(ip)
        if node is None:
            return False
        self._entries[ip] = node
        return True

    def delete(self, ip: str) -> bool:
        return self._entries.pop(ip, None) is not None

    def prune(self) -> int:
        """Drop every expired entry."""
        return len(self._entries.expire())

    def keys(self) -> List[str]:
        self._entries.expire()
        return list(self._entries)

    def values(self) -> List[PeerNode]:
        self._entries.expire()
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
