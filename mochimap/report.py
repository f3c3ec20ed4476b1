"""
Database Integrity Report

Compares the block archive with the database: every archived block must have
a block row, and every NORMAL block must have as many stored transactions as
its header count.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Tuple

from .node_adapter.codec import TRAILER_LEN, CodecError, peek_trailer
from .storage import QueryPlan, Store
from .types import BlockType

ARCHIVE_NAME = re.compile(r'^b[0-9a-f]{16}x[0-9a-f]{8}\.bc$')

logger = logging.getLogger("IntegrityReport")


@dataclass
class IntegrityReport:
    scanned: int = 0
    missing_blocks: List[str] = field(default_factory=list)
    missing_transactions: List[Tuple[str, int]] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing_blocks or self.missing_transactions or self.unreadable)

    def lines(self) -> List[str]:
        lines = [f"Missing block file {name}" for name in self.missing_blocks]
        lines += [f"Missing {num} txs from {name}" for name, num in self.missing_transactions]
        lines += [f"Unreadable block file {name}" for name in self.unreadable]
        return lines

    def write(self, path: str) -> None:
        with open(path, 'w') as f:
            f.write(''.join(line + '\n' for line in self.lines()))


def _list_archive(archive_dir: str) -> List[str]:
    return sorted(name for name in os.listdir(archive_dir) if ARCHIVE_NAME.match(name))


def _read_tail(path: str) -> bytes:
    with open(path, 'rb') as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        f.seek(max(0, size - TRAILER_LEN))
        return f.read(TRAILER_LEN)


async def build_report(store: Store, archive_dir: str) -> IntegrityReport:
    """Scan `archive_dir` against the block and transaction tables."""
    loop = asyncio.get_running_loop()
    report = IntegrityReport()
    names = await loop.run_in_executor(None, _list_archive, archive_dir)
    logger.info(f"Scanning {len(names)} archived blocks in {archive_dir}")

    for name in names:
        report.scanned += 1
        try:
            tail = await loop.run_in_executor(None, _read_tail, os.path.join(archive_dir, name))
            bnum, bhash, _ = peek_trailer(tail)
        except (OSError, CodecError) as e:
            logger.warning(f"Cannot read trailer of {name}: {e}")
            report.unreadable.append(name)
            continue

        key = {'bnum': bnum, 'bhash': bhash}
        row = await store.fetch_one('block', QueryPlan.where(key))
        if row is None:
            report.missing_blocks.append(name)
            continue

        if row['type'] == BlockType.NORMAL.value:
            stored = await store.query('transaction', QueryPlan.where(key, limit=None))
            missing = int(row['count']) - len(stored)
            if missing > 0:
                report.missing_transactions.append((name, missing))

        if report.scanned % 1000 == 0:
            logger.info(f"Progress: {report.scanned}/{len(names)}")

    logger.info(
        f"Blocks missing: {len(report.missing_blocks)}, "
        f"transactions missing: {sum(n for _, n in report.missing_transactions)}"
    )
    return report
