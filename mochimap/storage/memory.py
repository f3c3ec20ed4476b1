"""
In-Memory Store

Process-local Store for development (`mochimap serve --memory-store`) and
tests. Honours the same key, upsert and duplicate semantics as PostgresStore;
transaction scopes keep an undo log and roll back on error.
"""

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .base import Store, StoreScope
from .errors import DuplicateKeyError, StoreError
from .query import QueryPlan, apply_plan, matches
from .schema import TABLES, get_table

Undo = Tuple[str, Tuple, Optional[Dict[str, Any]]]


class MemoryScope(StoreScope):
    """Write access that records how to undo every change."""

    def __init__(self, store: "MemoryStore", undo: Optional[List[Undo]] = None):
        self._store = store
        self._undo = undo

    def _put(self, table: str, key: Tuple, row: Optional[Dict[str, Any]]) -> None:
        rows = self._store._tables[table]
        if self._undo is not None:
            previous = rows.get(key)
            self._undo.append((table, key, dict(previous) if previous is not None else None))
        if row is None:
            rows.pop(key, None)
        else:
            rows[key] = row

    async def insert_row(self, table: str, row: Mapping[str, Any]) -> int:
        self._store._check_open()
        tdef = get_table(table)
        key = tdef.key_of(row)
        if key in self._store._tables[table]:
            raise DuplicateKeyError(table, f"Duplicate key {key} in {table}")
        self._put(table, key, {c: row.get(c) for c in tdef.columns})
        return 1

    async def bulk_load(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        self._store._check_open()
        tdef = get_table(table)
        current = self._store._tables[table]
        count = 0
        for row in rows:
            key = tdef.key_of(row)
            existing = current.get(key)
            if existing is None:
                self._put(table, key, {c: row.get(c) for c in tdef.columns})
                count += 1
            elif tdef.upsert:
                updated = dict(existing)
                updated.update({c: row[c] for c in tdef.upsert if c in row})
                self._put(table, key, updated)
                count += 1
        return count

    async def query(self, table: str, plan: QueryPlan) -> List[Dict[str, Any]]:
        self._store._check_open()
        tdef = get_table(table)
        plan.validate(tdef)
        return apply_plan(self._store._tables[table].values(), plan)

    async def delete(self, table: str, criteria: Mapping[str, Any]) -> int:
        self._store._check_open()
        plan = QueryPlan.where(criteria).validate(get_table(table))
        rows = self._store._tables[table]
        doomed = [key for key, row in rows.items() if matches(plan.conditions, row)]
        for key in doomed:
            self._put(table, key, None)
        return len(doomed)


class MemoryStore(MemoryScope, Store):
    """
    Store backed by ordered dicts keyed by each table's primary key.

    Transaction scopes are serialized with a lock; plain calls outside a
    scope apply immediately.
    """

    def __init__(self):
        self._tables: Dict[str, "OrderedDict[Tuple, Dict[str, Any]]"] = {
            name: OrderedDict() for name in TABLES
        }
        self._lock = asyncio.Lock()
        self._closed = False
        super().__init__(self)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("Store is closed")

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Snapshot of every row in a table, in insertion order."""
        return [dict(row) for row in self._tables[table].values()]

    @asynccontextmanager
    async def transaction(self):
        self._check_open()
        async with self._lock:
            undo: List[Undo] = []
            try:
                yield MemoryScope(self, undo)
            except BaseException:
                for table, key, previous in reversed(undo):
                    if previous is None:
                        self._tables[table].pop(key, None)
                    else:
                        self._tables[table][key] = previous
                raise

    async def close(self) -> None:
        self._closed = True
