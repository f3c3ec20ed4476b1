"""
Unit tests for peer consensus helpers.

Tests:
- chain_tip grouping and tie-breaks
- query_consensus quorum, low-confidence and unavailable outcomes
"""

import asyncio

import pytest

from mochimap.network.consensus import HIGH, LOW, UNAVAILABLE, chain_tip, query_consensus
from mochimap.types import PeerNode, PeerStatus


def node(ip, height, weight="0x01", status=PeerStatus.OK, chain_hash=None):
    return PeerNode(ip, status, height, chain_hash or f"{height:064x}", weight)


class TestChainTip:
    """Test chain tip selection."""

    def test_majority_wins(self):
        tip = chain_tip([node("a", 10), node("b", 10), node("c", 11, weight="0xff")])
        assert (tip.height, tip.peers, tip.total) == (10, 2, 3)

    def test_tie_broken_by_weight(self):
        tip = chain_tip([node("a", 10, weight="0x05"), node("b", 11, weight="0x0a")])
        assert tip.height == 11
        assert tip.weight == "0x0a"

    def test_unhealthy_and_hashless_ignored(self):
        tip = chain_tip([
            node("a", 50, status=PeerStatus.TIMEOUT),
            node("b", 40, chain_hash=""),
            node("c", 10),
        ])
        assert tip.height == 10
        assert tip.total == 1

    def test_no_healthy_nodes(self):
        assert chain_tip([node("a", 10, status=PeerStatus.BAD)]) is None
        assert chain_tip([]) is None

    def test_to_dict(self):
        tip = chain_tip([node("a", 10)])
        assert tip.to_dict() == {'bnum': 10, 'bhash': f"{10:064x}", 'weight': "0x01", 'peers': 1, 'total': 1}


class TestQueryConsensus:
    """Test quorum queries."""

    @staticmethod
    def peers(*ips):
        return [PeerNode(ip, PeerStatus.OK) for ip in ips]

    @pytest.mark.asyncio
    async def test_quorum_reached(self):
        answers = {"a": 5, "b": 6, "c": 5, "d": 5}

        async def request(ip):
            return answers[ip]

        result = await query_consensus(self.peers("a", "b", "c", "d"), request, quorum=3)
        assert result.value == 5
        assert result.confidence == HIGH
        assert result.agreeing == 3
        assert result.queried == 4

    @pytest.mark.asyncio
    async def test_quorum_stops_waiting_for_slow_peers(self):
        async def request(ip):
            if ip == "slow":
                await asyncio.sleep(10)
            return 1

        result = await asyncio.wait_for(
            query_consensus(self.peers("a", "b", "slow"), request, quorum=2), timeout=1
        )
        assert result.confidence == HIGH

    @pytest.mark.asyncio
    async def test_low_confidence_returns_first_answer(self):
        async def request(ip):
            if ip == "a":
                return 9
            await asyncio.sleep(0.01)
            return 4

        result = await query_consensus(self.peers("a", "b"), request, quorum=3)
        assert result.value == 9
        assert result.confidence == LOW
        assert result.responded == 2

    @pytest.mark.asyncio
    async def test_errors_and_none_are_not_answers(self):
        async def request(ip):
            if ip == "a":
                raise ConnectionError("refused")
            return None

        result = await query_consensus(self.peers("a", "b"), request)
        assert result.confidence == UNAVAILABLE
        assert not result.available
        assert result.queried == 2

    @pytest.mark.asyncio
    async def test_no_peers(self):
        async def request(ip):
            return 1

        result = await query_consensus([], request)
        assert result.confidence == UNAVAILABLE
        assert result.queried == 0
