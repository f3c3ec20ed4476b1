"""
Unit tests for the simulated peer network.

Tests:
- Deterministic graph from a seed
- Reply shapes, outages and recovery
- Scanner discovery over the simulated graph
"""

import pytest

from mochimap.config import ScannerConfig
from mochimap.network import MockNetworkConfig, MockPeerProtocol, PeerProtocolError, PeerScanner


class TestMockPeerProtocol:
    """Test simulated replies."""

    def test_seed_is_deterministic(self):
        assert MockPeerProtocol(seed=3).ips == MockPeerProtocol(seed=3).ips

    @pytest.mark.asyncio
    async def test_bootstrap_reply(self):
        protocol = MockPeerProtocol(MockNetworkConfig(unreachable_probability=0), seed=1)
        report = await protocol.request_peer_list("127.0.0.1")
        assert report['status'] == 'ok'
        assert report['peers'] == protocol.ips[:6]
        assert report['chain_height'] in (999, 1000)

    @pytest.mark.asyncio
    async def test_unknown_ip_raises(self):
        with pytest.raises(PeerProtocolError):
            await MockPeerProtocol(seed=1).request_peer_list("8.8.8.8")

    @pytest.mark.asyncio
    async def test_outage_and_recovery(self):
        protocol = MockPeerProtocol(MockNetworkConfig(unreachable_probability=0), seed=1)
        ip = protocol.ips[0]
        protocol.simulate_outage([ip])
        assert (await protocol.request_peer_list(ip))['status'] == 'timeout'
        protocol.simulate_recovery()
        assert (await protocol.request_peer_list(ip))['status'] == 'ok'

    @pytest.mark.asyncio
    async def test_balance_is_stable(self):
        protocol = MockPeerProtocol(MockNetworkConfig(lagging_probability=0, unreachable_probability=0), seed=1)
        first = await protocol.request_balance(protocol.ips[0], "ab" * 32)
        second = await protocol.request_balance(protocol.ips[1], "ab" * 32)
        assert first == second


class TestScannerOverMock:
    """Test discovery end to end against the simulated graph."""

    @pytest.mark.asyncio
    async def test_discovers_reachable_nodes(self):
        protocol = MockPeerProtocol(MockNetworkConfig(num_nodes=12, peers_per_node=4, unreachable_probability=0), seed=5)
        scanner = PeerScanner(protocol, ScannerConfig(node_ip="127.0.0.1", run_interval=60))
        scanner.scan("127.0.0.1")
        await scanner.drain()

        cached = set(scanner.cache.keys())
        assert cached
        assert protocol.ips[0] in cached
        assert cached <= set(protocol.ips)
        assert all(node.healthy for node in scanner.cache.values())
