"""
MochiMap Metrics

Dataclasses for tracking ingestion and scanner health.
"""

from dataclasses import dataclass, field
from typing import Dict
import time


@dataclass
class WatcherMetrics:
    """Metrics for FileWatcher."""

    events_delivered: int = 0
    reinits: int = 0
    stat_errors: int = 0
    handler_errors: int = 0
    coalesced_events: int = 0


@dataclass
class BlockMetrics:
    """Metrics for BlockIngestor."""

    blocks_queued: int = 0
    blocks_processed: int = 0
    blocks_rejected: int = 0
    blocks_backed_up: int = 0
    blocks_archived: int = 0
    blocks_recovered: int = 0
    duplicates: int = 0

    # Persistence
    persist_errors: int = 0
    transactions_loaded: int = 0
    ledger_deltas: int = 0

    # Timing
    last_block_num: int = 0
    last_block_time: float = 0.0
    total_process_time_ms: float = 0.0

    @property
    def avg_process_time_ms(self) -> float:
        return self.total_process_time_ms / self.blocks_processed if self.blocks_processed > 0 else 0.0


@dataclass
class MempoolMetrics:
    """Metrics for MempoolIngestor."""

    cycles: int = 0
    records_read: int = 0
    records_inserted: int = 0
    malformed_cycles: int = 0
    resets: int = 0
    read_errors: int = 0
    position: int = 0


@dataclass
class ScannerMetrics:
    """Metrics for PeerScanner."""

    scans: int = 0
    deferred: int = 0
    skipped_recent: int = 0
    failures: int = 0
    reachable: int = 0
    cached: int = 0
    reinits: int = 0
    idle_since: float = 0.0


@dataclass
class StreamMetrics:
    """Metrics for EventBroadcaster."""

    events_emitted: int = 0
    subscribers: int = 0
    dropped_events: int = 0


@dataclass
class ServiceMetrics:
    """
    Aggregate metrics for the entire service.

    Combines all component metrics for monitoring.
    """

    blocks: BlockMetrics = field(default_factory=BlockMetrics)
    mempool: MempoolMetrics = field(default_factory=MempoolMetrics)
    scanner: ScannerMetrics = field(default_factory=ScannerMetrics)
    stream: StreamMetrics = field(default_factory=StreamMetrics)
    block_watcher: WatcherMetrics = field(default_factory=WatcherMetrics)
    mempool_watcher: WatcherMetrics = field(default_factory=WatcherMetrics)

    start_time: float = field(default_factory=time.time)
    is_running: bool = False

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict:
        """Convert metrics to dictionary for JSON serialization."""
        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "is_running": self.is_running,
            "blocks": {
                "queued": self.blocks.blocks_queued,
                "processed": self.blocks.blocks_processed,
                "rejected": self.blocks.blocks_rejected,
                "backed_up": self.blocks.blocks_backed_up,
                "archived": self.blocks.blocks_archived,
                "recovered": self.blocks.blocks_recovered,
                "persist_errors": self.blocks.persist_errors,
                "last_block_num": self.blocks.last_block_num,
                "avg_process_time_ms": round(self.blocks.avg_process_time_ms, 2),
            },
            "mempool": {
                "cycles": self.mempool.cycles,
                "records_read": self.mempool.records_read,
                "records_inserted": self.mempool.records_inserted,
                "malformed_cycles": self.mempool.malformed_cycles,
                "position": self.mempool.position,
            },
            "scanner": {
                "scans": self.scanner.scans,
                "deferred": self.scanner.deferred,
                "failures": self.scanner.failures,
                "reachable": self.scanner.reachable,
                "cached": self.scanner.cached,
                "reinits": self.scanner.reinits,
            },
            "stream": {
                "events_emitted": self.stream.events_emitted,
                "subscribers": self.stream.subscribers,
                "dropped_events": self.stream.dropped_events,
            },
            "watchers": {
                "block_events": self.block_watcher.events_delivered,
                "block_reinits": self.block_watcher.reinits,
                "mempool_events": self.mempool_watcher.events_delivered,
                "mempool_reinits": self.mempool_watcher.reinits,
                "errors": (self.block_watcher.stat_errors + self.block_watcher.handler_errors
                           + self.mempool_watcher.stat_errors + self.mempool_watcher.handler_errors),
            },
        }
