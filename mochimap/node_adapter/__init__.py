"""
Mochimo Node Adapter

Reads the local Mochimo node's files and turns them into stored records:

- FileWatcher: self-healing file/directory watch (inotify or re-stat)
- BlockIngestor: serial block pipeline with archive, backup and recovery
- MempoolIngestor: incremental reader of txclean.dat
- codec / ledger: binary decoding and ledger projections

Usage:
    from mochimap.node_adapter import BlockIngestor, MempoolIngestor

    blocks = BlockIngestor(store, config.ingestor, emit=broadcaster.emit)
    await blocks.start()
"""

from .block_ingestor import BlockIngestor, block_summary
from .codec import (
    TX_ENTRY_LEN,
    LEDGER_ENTRY_LEN,
    CodecError,
    InvalidBlockError,
    decode_block,
    decode_transaction,
    verify_hash,
)
from .ledger import BaselineNotFound, build_richlist, compute_deltas, find_baseline
from .mempool_ingestor import MempoolIngestor
from .watcher import FileWatcher

__all__ = [
    'BlockIngestor',
    'block_summary',
    'MempoolIngestor',
    'FileWatcher',
    'TX_ENTRY_LEN',
    'LEDGER_ENTRY_LEN',
    'CodecError',
    'InvalidBlockError',
    'decode_block',
    'decode_transaction',
    'verify_hash',
    'BaselineNotFound',
    'build_richlist',
    'compute_deltas',
    'find_baseline',
]
