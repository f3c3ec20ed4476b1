"""
Block Ingestor

Consumes block files written by the Mochimo node and persists the block,
its transactions or its ledger projections.

Per file, strictly one at a time in detection order:
    queued -> reading -> parsing -> validating -> persisting(block)
           -> persisting(tx | ledger) -> archived

A persistence failure writes the raw block to the backup directory and
enters DB failure mode. The next successful block leaves failure mode and
starts a scan-only recovery watcher over the backup directory, which feeds
backups through the same handler and queue. Validated blocks are always
archived write-once under their canonical name; rejected blocks are kept
under archive/rejected/ for inspection.
"""

import asyncio
import logging
import os
import time
from collections import deque
from functools import partial
from typing import Any, Callable, Deque, Dict, Optional

from ..config import IngestorConfig, WatcherConfig
from ..metrics import BlockMetrics, WatcherMetrics
from ..storage import DuplicateKeyError, QueryPlan, Store, StoreError, UNCONFIRMED
from ..types import BlockRecord, BlockType
from .codec import EPOCH_LENGTH, InvalidBlockError, decode_block
from .ledger import BaselineNotFound, build_richlist, compute_deltas, find_baseline
from .watcher import FileWatcher

EmitFn = Callable[[Dict[str, Any], str], None]


def block_summary(block: BlockRecord) -> Dict[str, Any]:
    """JSON-friendly block row for the emit sink."""
    summary = block.to_row()
    summary['created'] = block.created.isoformat() + 'Z'
    summary['started'] = block.started.isoformat() + 'Z'
    return summary


def _read_file(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def _write_file(directory: str, filename: str, data: bytes, exclusive: bool) -> None:
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, filename), 'xb' if exclusive else 'wb') as f:
        f.write(data)


class BlockIngestor:
    """
    Serial block file processor.

    Usage:
        ingestor = BlockIngestor(store, IngestorConfig(), emit=broadcaster.emit)
        await ingestor.start()
        ...
        await ingestor.stop()
    """

    def __init__(
        self,
        store: Store,
        config: Optional[IngestorConfig] = None,
        emit: Optional[EmitFn] = None,
        watcher_config: Optional[WatcherConfig] = None,
        metrics: Optional[BlockMetrics] = None,
        watcher_metrics: Optional[WatcherMetrics] = None,
        target: Optional[str] = None,
        scan_only: bool = False,
    ):
        self.config = config or IngestorConfig()
        self.target = target or self.config.block_dir
        self.metrics = metrics or BlockMetrics()
        self._store = store
        self._emit = emit
        self._watcher_config = watcher_config or WatcherConfig()
        self._logger = logging.getLogger("BlockIngestor")

        # State
        self._queue: Deque[str] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._db_failure = False
        self._closing = False

        self._watcher = FileWatcher(
            self.target,
            self.handler,
            name="BCWatcher",
            scan_only=scan_only,
            config=self._watcher_config,
            metrics=watcher_metrics,
        )
        self._recovery: Optional[FileWatcher] = None

    @property
    def db_failure(self) -> bool:
        return self._db_failure

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def recovering(self) -> bool:
        return self._recovery is not None

    async def start(self) -> None:
        self._closing = False
        await self._watcher.start()

    async def stop(self) -> None:
        """Stop watching, finish the in-flight block, drop the rest of the queue."""
        self._closing = True
        await self._watcher.stop()
        if self._recovery:
            self._logger.info("recovery terminating...")
            await self._recovery.stop()
            self._recovery = None

        pending = len(self._queue)
        self._queue.clear()
        if pending:
            self._logger.info(f"Dropped {pending} queued blocks; they will be rescanned on restart")
        if self._worker and not self._worker.done():
            await asyncio.shield(self._worker)
        self._worker = None

    async def drain(self) -> None:
        """Wait until every delivered file has been processed."""
        while True:
            await self._watcher.drain()
            if self._recovery:
                await self._recovery.drain()
            if self._worker and not self._worker.done():
                await asyncio.shield(self._worker)
                continue
            return

    # ==================== Queue ====================

    def handler(self, stats: Optional[os.stat_result], event_type: str, filename: str,
                directory: Optional[str] = None) -> None:
        """Watcher callback: queue new block files."""
        if self._closing:
            return
        if event_type != 'rename' or not filename or not filename.endswith(self.config.block_suffix):
            return

        self._queue.append(os.path.join(directory or self.target, filename))
        self.metrics.blocks_queued += 1

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        while self._queue:
            path = self._queue.popleft()
            try:
                await self.process_block(path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # process_block handles its own failures; this guards the loop
                self._logger.exception(f"Unexpected failure processing {path}: {e}")

    # ==================== Pipeline ====================

    async def process_block(self, path: str) -> Optional[BlockRecord]:
        """
        Read, validate, persist and archive one block file.

        Returns the decoded block, or None if it was missing or rejected.
        """
        start = time.time()
        loop = asyncio.get_running_loop()
        filename = os.path.basename(path)

        try:
            data = await loop.run_in_executor(None, _read_file, path)
        except FileNotFoundError:
            self._logger.debug(f"{path} no longer exists")
            return None
        except OSError as e:
            self._logger.error(f"Failed to read {path}: {e}")
            return None

        try:
            block = decode_block(data)
        except InvalidBlockError as e:
            self.metrics.blocks_rejected += 1
            self._logger.warning(f"{path} rejected: {e}")
            await self._write_block(data, self.config.rejected_dir, filename, exclusive=False)
            return None

        from_backup = self._in_backup_dir(path)
        try:
            await self._persist(block)
        except StoreError as e:
            self.metrics.persist_errors += 1
            self._logger.error(f"DB failure for block {block.bnum}/{block.bhash[:8]} ({path}): {e}")
            if not from_backup:
                if await self._write_block(data, self.config.backup_dir, block.archive_name, exclusive=False):
                    self.metrics.blocks_backed_up += 1
            if not self._db_failure:
                self._logger.warning("DB FAILURE MODE ACTIVATED")
                self._db_failure = True
        else:
            self.metrics.blocks_processed += 1
            self.metrics.last_block_num = block.bnum
            self.metrics.last_block_time = time.time()
            self.metrics.total_process_time_ms += (time.time() - start) * 1000
            if from_backup:
                await self._remove_backup(path)
            if self._db_failure:
                self._db_failure = False
                await self._start_recovery()
        finally:
            if await self._write_block(data, self.config.archive_dir, block.archive_name, exclusive=True):
                self.metrics.blocks_archived += 1

        return block

    async def _persist(self, block: BlockRecord) -> None:
        try:
            await self._store.insert_row('block', block.to_row())
            inserted = True
        except DuplicateKeyError:
            self.metrics.duplicates += 1
            self._logger.debug(f"Block {block.bnum}/{block.bhash[:8]} already stored")
            inserted = False

        if inserted:
            self._publish(block_summary(block), 'block')

        if block.block_type is BlockType.NORMAL and block.transactions:
            await self._persist_transactions(block)
        elif block.block_type.is_ledger:
            await self._persist_ledger(block)

    async def _persist_transactions(self, block: BlockRecord) -> None:
        """Confirm every transaction; unconfirmed copies are replaced in the same scope."""
        txids = [tx.txid for tx in block.transactions]
        async with self._store.transaction() as scope:
            pending = await scope.query(
                'transaction',
                QueryPlan.where({'bhash': UNCONFIRMED, 'txid': txids}, limit=None),
            )
            first_seen = {row['txid']: row['created'] for row in pending}

            rows = []
            for tx in block.transactions:
                row = tx.to_row()
                row.update({
                    'bhash': block.bhash,
                    'bnum': block.bnum,
                    'created': first_seen.get(tx.txid, block.created),
                    'confirmed': block.created,
                })
                rows.append(row)

            await scope.bulk_load('transaction', rows)
            if pending:
                await scope.delete('transaction', {'bhash': UNCONFIRMED, 'txid': list(first_seen)})
        self.metrics.transactions_loaded += len(txids)

    async def _persist_ledger(self, block: BlockRecord) -> None:
        """Replace the richlist and store balance deltas against the epoch baseline."""
        by_tag = self.config.identity_by_tag
        baseline = None
        if block.bnum >= EPOCH_LENGTH:
            loop = asyncio.get_running_loop()
            try:
                found = await loop.run_in_executor(
                    None, find_baseline, self.config.archive_dir, block, EPOCH_LENGTH
                )
                baseline = found.ledger
            except BaselineNotFound as e:
                self._logger.warning(
                    f"Previous neogenesis for block {block.bnum}/{block.bhash[:8]} unavailable: {e}; "
                    f"treating all entries as new"
                )

        richlist = build_richlist(block.ledger, block.bnum, by_tag)
        deltas = compute_deltas(block.ledger, baseline, by_tag)
        balance_rows = [d.to_row(block.bnum, block.bhash, block.created) for d in deltas]

        async with self._store.transaction() as scope:
            await scope.delete('balance', {'bnum': block.bnum, 'bhash': block.bhash})
            await scope.bulk_load('balance', balance_rows)

            latest = await scope.fetch_one('richlist', QueryPlan(order_by=(('bnum', 'DESC'),)))
            if latest is not None and int(latest['bnum']) > block.bnum:
                self._logger.info(
                    f"Richlist for block {latest['bnum']} is newer than {block.bnum}; not replaced"
                )
            else:
                await scope.delete('richlist', {})
                await scope.bulk_load('richlist', [entry.to_row() for entry in richlist])

        self.metrics.ledger_deltas += len(deltas)
        self._logger.info(
            f"Ledger block {block.bnum}/{block.bhash[:8]}: {len(richlist)} ranked, {len(deltas)} deltas"
        )

    # ==================== Recovery ====================

    async def _start_recovery(self) -> None:
        self._logger.info("DB RECOVERY MODE ACTIVATED")
        if self._recovery is not None:
            # Re-list the backup directory so earlier failures are retried too
            await self._recovery.init()
            return
        self._recovery = FileWatcher(
            self.config.backup_dir,
            partial(self.handler, directory=self.config.backup_dir),
            name="BCRecoveryScan",
            scan_only=True,
            config=self._watcher_config,
        )
        await self._recovery.start()

    def _in_backup_dir(self, path: str) -> bool:
        return os.path.dirname(os.path.abspath(path)) == os.path.abspath(self.config.backup_dir)

    async def _remove_backup(self, path: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, path)
            self.metrics.blocks_recovered += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            self._logger.error(f"Failed to remove recovered backup {path}: {e}")

    # ==================== Output ====================

    async def _write_block(self, data: bytes, directory: str, filename: str, exclusive: bool) -> bool:
        """Write raw block bytes. Exclusive writes skip existing files silently."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write_file, directory, filename, data, exclusive)
            return True
        except FileExistsError:
            return False
        except OSError as e:
            self._logger.error(f"Failed to write {filename} to {directory}: {e}")
            return False

    def _publish(self, payload: Dict[str, Any], event_type: str) -> None:
        if not self._emit:
            return
        try:
            self._emit(payload, event_type)
        except Exception as e:
            self._logger.error(f"emit failed for {event_type}: {e}")
