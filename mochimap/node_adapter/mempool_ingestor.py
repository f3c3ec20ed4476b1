"""
Mempool Ingestor

Tails the node's txclean.dat, a file of fixed-width transaction entries that
only grows until the node replaces or truncates it.

A read cursor tracks how much of the current file generation has been
consumed. The cursor resets on replacement (rename) and truncation, and only
advances after a complete read of a whole number of entries.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config import IngestorConfig, WatcherConfig
from ..metrics import MempoolMetrics, WatcherMetrics
from ..storage import DuplicateKeyError, Store, StoreError, UNCONFIRMED
from ..types import TransactionRecord
from .codec import TX_ENTRY_LEN, CodecError, iter_transactions
from .watcher import FileWatcher

EmitFn = Callable[[Dict[str, Any], str], None]


def _read_range(path: str, position: int, length: int) -> bytes:
    with open(path, 'rb') as f:
        f.seek(position)
        return f.read(length)


class MempoolIngestor:
    """
    Incremental reader of unconfirmed transactions.

    Usage:
        ingestor = MempoolIngestor(store, IngestorConfig(), emit=broadcaster.emit)
        await ingestor.start()
    """

    def __init__(
        self,
        store: Optional[Store],
        config: Optional[IngestorConfig] = None,
        emit: Optional[EmitFn] = None,
        watcher_config: Optional[WatcherConfig] = None,
        metrics: Optional[MempoolMetrics] = None,
        watcher_metrics: Optional[WatcherMetrics] = None,
        target: Optional[str] = None,
        scan_only: bool = False,
    ):
        self.config = config or IngestorConfig()
        self.target = target or self.config.txclean_path
        self.metrics = metrics or MempoolMetrics()
        self.position = 0
        self._store = store
        self._emit = emit
        self._logger = logging.getLogger("MempoolIngestor")
        self._watcher = FileWatcher(
            self.target,
            self.handler,
            name="TXWatcher",
            scan_only=scan_only,
            config=watcher_config,
            metrics=watcher_metrics,
        )

    async def start(self) -> None:
        await self._watcher.start()

    async def stop(self) -> None:
        await self._watcher.stop()

    async def drain(self) -> None:
        await self._watcher.drain()

    async def handler(self, stats: Optional[os.stat_result], event_type: str, filename: str) -> None:
        """Watcher callback. Events are delivered one at a time."""
        if event_type == 'rename':
            self._reset("file replaced")
            return
        if stats is None:
            return
        await self.read_cycle(stats.st_size)

    def _reset(self, reason: str) -> None:
        if self.position:
            self._logger.info(f"Cursor reset ({reason}) at {self.position}")
        self.position = 0
        self.metrics.position = 0
        self.metrics.resets += 1

    async def read_cycle(self, size: int) -> List[TransactionRecord]:
        """Read and forward every entry appended since the last cycle."""
        self.metrics.cycles += 1
        if size < self.position:
            self._reset(f"truncated to {size}")

        position = self.position
        remaining = size - position
        if remaining <= 0:
            return []

        invalid = remaining % TX_ENTRY_LEN
        if invalid:
            self.metrics.malformed_cycles += 1
            self._logger.warning(
                f"TXCLEAN invalid: size={size} position={position} "
                f"remaining={remaining} invalid={invalid}"
            )
            return []

        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, _read_range, str(self.target), position, remaining)
        except OSError as e:
            self.metrics.read_errors += 1
            self._logger.error(f"Failed to read {self.target} at {position}: {e}")
            return []

        if len(data) != remaining:
            self.metrics.read_errors += 1
            self._logger.warning(
                f"Insufficient mempool bytes read at {position}: wanted {remaining}, got {len(data)}"
            )
            return []

        self.position = size
        self.metrics.position = size

        try:
            records = list(iter_transactions(data))
        except CodecError as e:
            self._logger.error(f"Failed to decode mempool entries at {position}: {e}")
            return []

        self.metrics.records_read += len(records)
        for record in records:
            await self._forward(record)
        return records

    async def _forward(self, record: TransactionRecord) -> None:
        if self._store is not None:
            try:
                if not await self._store.exists('transaction', {'txhash': record.content_hash}):
                    row = record.to_row()
                    row.update({'bhash': UNCONFIRMED, 'bnum': None, 'created': datetime.utcnow()})
                    await self._store.insert_row('transaction', row)
                    self.metrics.records_inserted += 1
            except DuplicateKeyError:
                pass
            except StoreError as e:
                self._logger.error(f"Failed to store unconfirmed transaction {record.txid}: {e}")

        if self._emit:
            try:
                self._emit(record.to_row(), 'transaction')
            except Exception as e:
                self._logger.error(f"emit failed for transaction {record.txid}: {e}")
