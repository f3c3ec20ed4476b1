"""
MochiMap Storage

Relational persistence for blocks, transactions and ledger projections.
"""

from .base import Store, StoreScope
from .errors import DuplicateKeyError, StoreError
from .memory import MemoryStore
from .postgres import PostgresStore
from .query import Condition, QueryError, QueryPlan, parse_search
from .schema import TABLES, UNCONFIRMED, get_table

__all__ = [
    'Store',
    'StoreScope',
    'StoreError',
    'DuplicateKeyError',
    'MemoryStore',
    'PostgresStore',
    'Condition',
    'QueryError',
    'QueryPlan',
    'parse_search',
    'TABLES',
    'UNCONFIRMED',
    'get_table',
]
