"""
MochiMap

Ingests a Mochimo node's local state (block files, the mempool file and the
peer network) into a relational store, a live event feed and a read-only
query API.
"""

__version__ = "0.1.0"

from .config import ServiceConfig
from .types import (
    BlockRecord,
    BlockType,
    LedgerDelta,
    LedgerEntry,
    PeerNode,
    PeerStatus,
    RichListEntry,
    TransactionRecord,
)

__all__ = [
    '__version__',
    'ServiceConfig',
    'BlockRecord',
    'BlockType',
    'LedgerDelta',
    'LedgerEntry',
    'PeerNode',
    'PeerStatus',
    'RichListEntry',
    'TransactionRecord',
]
