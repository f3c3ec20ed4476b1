"""
Mock Peer Protocol

Simulated Mochimo peer graph for offline development.
Responses follow the same shape as a real PeerProtocol adapter.

Use cases:
- Unit testing the scanner without network access
- Running the service (`mochimap serve --mock-network`) without a node
"""

import hashlib
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set

from .protocol import PeerProtocol, PeerProtocolError


@dataclass
class MockNetworkConfig:
    """Configuration for the simulated network."""

    # Graph shape
    num_nodes: int = 24
    peers_per_node: int = 6
    bootstrap_ip: str = "127.0.0.1"

    # Chain tip
    chain_height: int = 1000
    lagging_probability: float = 0.2  # node is one block behind

    # Node health
    unreachable_probability: float = 0.1


def _block_hash(height: int) -> str:
    return hashlib.sha256(f"mock-block-{height}".encode()).hexdigest()


class MockPeerProtocol(PeerProtocol):
    """
    PeerProtocol backed by a seeded random peer graph.

    Usage:
        protocol = MockPeerProtocol(seed=7)
        report = await protocol.request_peer_list(protocol.config.bootstrap_ip)
    """

    def __init__(self, config: Optional[MockNetworkConfig] = None, seed: Optional[int] = None):
        self.config = config or MockNetworkConfig()
        self._random = random.Random(seed)
        self.height = self.config.chain_height

        self.ips: List[str] = [
            f"45.{self._random.randint(1, 250)}.{i // 250}.{i % 250 + 1}"
            for i in range(self.config.num_nodes)
        ]
        self._peers: Dict[str, List[str]] = {
            ip: self._random.sample(
                [p for p in self.ips if p != ip],
                min(self.config.peers_per_node, len(self.ips) - 1),
            )
            for ip in self.ips
        }
        self._peers[self.config.bootstrap_ip] = self.ips[:self.config.peers_per_node]
        self._lagging: Set[str] = {
            ip for ip in self.ips if self._random.random() < self.config.lagging_probability
        }
        self.unreachable: Set[str] = {
            ip for ip in self.ips if self._random.random() < self.config.unreachable_probability
        }
        self.requests: Dict[str, int] = {}

    def _tip(self, ip: str) -> Dict[str, Any]:
        height = self.height - 1 if ip in self._lagging else self.height
        return {
            'chain_height': height,
            'chain_hash': _block_hash(height),
            'chain_weight': format(height * 0x1000, 'x'),
        }

    async def request_peer_list(self, ip: str) -> Mapping[str, Any]:
        self.requests[ip] = self.requests.get(ip, 0) + 1
        if ip not in self._peers:
            raise PeerProtocolError(ip, "connection refused")
        if ip in self.unreachable:
            return {'status': 'timeout'}
        report = {'status': 'ok', 'peers': list(self._peers[ip])}
        report.update(self._tip(ip))
        return report

    async def request_balance(self, ip: str, address: str) -> Optional[int]:
        if ip not in self._peers or ip in self.unreachable:
            raise PeerProtocolError(ip, "connection refused")
        digest = hashlib.sha256(address.encode()).digest()
        balance = int.from_bytes(digest[:5], 'little')
        if ip in self._lagging:
            balance += 1
        return balance

    def simulate_block(self) -> int:
        """Advance the chain tip on every node."""
        self.height += 1
        return self.height

    def simulate_outage(self, ips: Optional[List[str]] = None) -> None:
        """Make `ips` (default: every node) unreachable."""
        self.unreachable.update(ips if ips is not None else self._peers)

    def simulate_recovery(self) -> None:
        self.unreachable.clear()
