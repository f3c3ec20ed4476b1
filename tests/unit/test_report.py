"""
Unit tests for the integrity report.

Tests:
- Missing block rows and missing transactions are reported
- Non-archive files are skipped, unreadable ones reported
"""

import pytest

from mochimap.node_adapter.codec import decode_block
from mochimap.report import build_report
from mochimap.storage import MemoryStore

from tests.synthetic import normal_block, pseudo_block, tx_entry, write_block


class TestIntegrityReport:
    """Test archive vs. database comparison."""

    @pytest.mark.asyncio
    async def test_clean_archive(self, tmp_path):
        store = MemoryStore()
        data = pseudo_block(3)
        write_block(str(tmp_path), data)
        await store.insert_row('block', decode_block(data).to_row())

        report = await build_report(store, str(tmp_path))

        assert report.scanned == 1
        assert report.ok
        assert report.lines() == []

    @pytest.mark.asyncio
    async def test_missing_block_and_transactions(self, tmp_path):
        store = MemoryStore()
        missing = pseudo_block(3)
        partial = normal_block(4, [tx_entry("a"), tx_entry("b"), tx_entry("c")])
        write_block(str(tmp_path), missing)
        write_block(str(tmp_path), partial)

        block = decode_block(partial)
        await store.insert_row('block', block.to_row())
        tx = block.transactions[0].to_row()
        tx.update({'bhash': block.bhash, 'bnum': block.bnum})
        await store.insert_row('transaction', tx)

        report = await build_report(store, str(tmp_path))
        output = tmp_path / "report.txt"
        report.write(str(output))

        assert not report.ok
        assert report.lines() == [
            f"Missing block file {decode_block(missing).archive_name}",
            f"Missing 2 txs from {block.archive_name}",
        ]
        assert output.read_text().splitlines() == report.lines()

    @pytest.mark.asyncio
    async def test_other_files_ignored(self, tmp_path):
        (tmp_path / "notes.txt").write_text("hello")
        (tmp_path / "rejected").mkdir()
        report = await build_report(MemoryStore(), str(tmp_path))
        assert report.scanned == 0

    @pytest.mark.asyncio
    async def test_unreadable_file(self, tmp_path):
        name = "b0000000000000003xdeadbeef.bc"
        (tmp_path / name).write_bytes(b"short")
        report = await build_report(MemoryStore(), str(tmp_path))
        assert report.unreadable == [name]
