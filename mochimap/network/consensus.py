"""
Peer Consensus

Two views of agreement across cached peers:

- chain_tip(): the (height, hash) held by the largest group of healthy peers
- query_consensus(): ask several peers the same question and accept the first
  answer that `quorum` of them agree on
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from ..types import PeerNode, weight_value

logger = logging.getLogger("Consensus")

HIGH = "high"
LOW = "low"
UNAVAILABLE = "unavailable"


@dataclass
class ConsensusResult:
    value: Any
    confidence: str
    agreeing: int = 0
    responded: int = 0
    queried: int = 0

    @property
    def available(self) -> bool:
        return self.confidence != UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'value': self.value,
            'confidence': self.confidence,
            'agreeing': self.agreeing,
            'responded': self.responded,
            'queried': self.queried,
        }


@dataclass
class ChainTip:
    height: int
    hash: str
    weight: str
    peers: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bnum': self.height,
            'bhash': self.hash,
            'weight': self.weight,
            'peers': self.peers,
            'total': self.total,
        }


def chain_tip(nodes: Iterable[PeerNode]) -> Optional[ChainTip]:
    """Chain tip held by the most healthy peers; ties go to the heavier, then higher chain."""
    healthy = [n for n in nodes if n.healthy and n.chain_hash]
    if not healthy:
        return None

    groups: Dict[tuple, List[PeerNode]] = {}
    for node in healthy:
        groups.setdefault((node.chain_height, node.chain_hash), []).append(node)

    (height, bhash), members = max(
        groups.items(),
        key=lambda item: (
            len(item[1]),
            max(weight_value(n.chain_weight) for n in item[1]),
            item[0][0],
        ),
    )
    weight = max((n.chain_weight for n in members), key=weight_value)
    return ChainTip(height=height, hash=bhash, weight=weight, peers=len(members), total=len(healthy))


async def query_consensus(
    peers: Sequence[PeerNode],
    request: Callable[[str], Awaitable[Optional[Hashable]]],
    quorum: int = 3,
) -> ConsensusResult:
    """
    Query every peer concurrently and settle on an answer.

    Returns the first value reported by at least `quorum` peers (high
    confidence); otherwise the first answer received (low confidence); or
    an unavailable result when nobody answered.
    """
    ips = list(dict.fromkeys(p.ip for p in peers))
    if not ips:
        return ConsensusResult(None, UNAVAILABLE)

    tasks = {asyncio.ensure_future(request(ip)): ip for ip in ips}
    votes: Counter = Counter()
    first: Optional[Any] = None
    responded = 0

    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                ip = tasks[task]
                if task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    logger.debug(f"consensus request to {ip} failed: {error}")
                    continue
                value = task.result()
                if value is None:
                    continue
                responded += 1
                if first is None:
                    first = value
                votes[value] += 1
                if votes[value] >= quorum:
                    return ConsensusResult(value, HIGH, votes[value], responded, len(ips))
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    if first is None:
        return ConsensusResult(None, UNAVAILABLE, 0, 0, len(ips))
    return ConsensusResult(first, LOW, votes[first], responded, len(ips))
