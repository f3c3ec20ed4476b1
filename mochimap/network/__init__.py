"""
Mochimo Peer Network

- PeerScanner: continuous bounded-concurrency scan of the peer graph
- PeerCache: capacity- and age-bounded LRU of peer states
- consensus: chain tip and quorum lookups across healthy peers
- PeerProtocol: capability interface of the external wire-protocol library

Usage:
    from mochimap.network import PeerScanner, load_protocol

    scanner = PeerScanner(load_protocol(config.scanner.protocol), config.scanner)
    await scanner.start()
"""

from .cache import PeerCache
from .consensus import ChainTip, ConsensusResult, chain_tip, query_consensus
from .geo import GeoConfig, GeoLocator
from .mock import MockNetworkConfig, MockPeerProtocol
from .protocol import PeerProtocol, PeerProtocolError, load_protocol
from .scanner import PeerScanner, is_private_ipv4

__all__ = [
    'PeerScanner',
    'is_private_ipv4',
    'PeerCache',
    'ChainTip',
    'ConsensusResult',
    'chain_tip',
    'query_consensus',
    'GeoConfig',
    'GeoLocator',
    'MockNetworkConfig',
    'MockPeerProtocol',
    'PeerProtocol',
    'PeerProtocolError',
    'load_protocol',
]
