"""
End-to-end tests over a synthetic epoch of blocks.

Tests:
- Genesis then neogenesis: rich list replaced, deltas only for changed balances
- Service start/stop with a memory store and simulated network
"""

import os

import pytest

from mochimap.config import IngestorConfig, ServiceConfig, WatcherConfig
from mochimap.network import MockNetworkConfig, MockPeerProtocol
from mochimap.node_adapter.block_ingestor import BlockIngestor
from mochimap.service import MochiMapService
from mochimap.storage import MemoryStore

from tests.synthetic import (
    address_hash,
    block_hash,
    chain,
    ledger_block,
    make_address,
    pseudo_block,
    write_block,
)

FAST = WatcherConfig(retry_delay=0.05, rename_delay=0.05, scan_interval=0.05)

ADDR1 = make_address("one")
ADDR2 = make_address("two")
ADDR3 = make_address("three")


@pytest.fixture
def epoch(tmp_path):
    """Block directory holding genesis, 255 pseudo-blocks and the first neogenesis."""
    block_dir = tmp_path / "bc"
    genesis = ledger_block(0, [(ADDR1, 100), (ADDR2, 50), (ADDR3, 0)])
    write_block(str(block_dir), genesis)
    pseudo = chain(1, 255, block_hash(genesis))
    for data in pseudo:
        write_block(str(block_dir), data)
    write_block(str(block_dir), ledger_block(256, [(ADDR1, 80), (ADDR2, 50), (ADDR3, 20)], block_hash(pseudo[-1])))
    return block_dir


class TestEpochLedger:
    """Test rich list and balance deltas across one epoch."""

    @pytest.mark.asyncio
    async def test_richlist_and_deltas(self, epoch, tmp_path):
        store = MemoryStore()
        config = IngestorConfig(
            archive_dir=str(tmp_path / "archive"),
            backup_dir=str(tmp_path / "backup"),
        )
        ingestor = BlockIngestor(store, config, watcher_config=FAST, target=str(epoch), scan_only=True)

        await ingestor.start()
        await ingestor.drain()
        await ingestor.stop()

        assert ingestor.metrics.blocks_processed == 257
        assert ingestor.metrics.blocks_rejected == 0

        richlist = sorted(store.rows('richlist'), key=lambda r: r['rank'])
        assert [(r['address_hash'], r['balance'], r['rank']) for r in richlist] == [
            (address_hash(ADDR1), 80, 1),
            (address_hash(ADDR2), 50, 2),
            (address_hash(ADDR3), 20, 3),
        ]
        assert all(r['bnum'] == 256 for r in richlist)

        neogenesis = {r['address_hash']: r['delta'] for r in store.rows('balance') if r['bnum'] == 256}
        assert neogenesis == {address_hash(ADDR1): -20, address_hash(ADDR3): 20}

        genesis = {r['address_hash']: r['delta'] for r in store.rows('balance') if r['bnum'] == 0}
        assert genesis[address_hash(ADDR1)] == 100
        assert genesis[address_hash(ADDR2)] == 50

    @pytest.mark.asyncio
    async def test_every_block_archived(self, epoch, tmp_path):
        config = IngestorConfig(
            archive_dir=str(tmp_path / "archive"),
            backup_dir=str(tmp_path / "backup"),
        )
        ingestor = BlockIngestor(MemoryStore(), config, watcher_config=FAST, target=str(epoch), scan_only=True)

        await ingestor.start()
        await ingestor.drain()
        await ingestor.stop()

        assert sorted(os.listdir(config.archive_dir)) == sorted(os.listdir(epoch))


class TestServiceLifecycle:
    """Test the assembled service without a database or live network."""

    @pytest.mark.asyncio
    async def test_start_ingest_stop(self, tmp_path):
        block_dir = tmp_path / "bc"
        write_block(str(block_dir), pseudo_block(7))
        txclean = tmp_path / "txclean.dat"
        txclean.write_bytes(b"")

        config = ServiceConfig(watcher=FAST, log_metrics_interval=0)
        config.ingestor.block_dir = str(block_dir)
        config.ingestor.txclean_path = str(txclean)
        config.ingestor.archive_dir = str(tmp_path / "archive")
        config.ingestor.backup_dir = str(tmp_path / "backup")
        config.scanner.run_interval = 60

        store = MemoryStore()
        protocol = MockPeerProtocol(MockNetworkConfig(num_nodes=6, unreachable_probability=0), seed=2)
        service = MochiMapService(config, store=store, protocol=protocol, enable_api=False)
        subscription = service.broadcaster.subscribe(['block'])

        await service.start()
        try:
            await service.blocks.drain()
            event = await subscription.get(timeout=2)
        finally:
            await service.stop()

        assert [r['bnum'] for r in store.rows('block')] == [7]
        assert event is not None and event.event_type == 'block'
        assert not service.metrics.is_running
