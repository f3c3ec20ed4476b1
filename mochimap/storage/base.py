"""
Store Interface

Async persistence capability consumed by the ingestors and the query API.

Write semantics per table are driven by storage.schema:
    insert_row  plain INSERT, raises DuplicateKeyError on a key collision
    bulk_load   INSERT ... ON CONFLICT (primary key) DO UPDATE/NOTHING

transaction() yields a StoreScope bound to one dedicated connection; it
commits when the block exits cleanly and rolls back otherwise.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, List, Mapping, Sequence

from .query import QueryPlan


class StoreScope(ABC):
    """Write/read operations available both on a Store and inside a transaction."""

    @abstractmethod
    async def insert_row(self, table: str, row: Mapping[str, Any]) -> int:
        """Insert one row. Raises DuplicateKeyError on key collision."""

    @abstractmethod
    async def bulk_load(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Upsert many rows keyed by the table's primary key."""

    @abstractmethod
    async def query(self, table: str, plan: QueryPlan) -> List[Dict[str, Any]]:
        """Rows matching the plan."""

    @abstractmethod
    async def delete(self, table: str, criteria: Mapping[str, Any]) -> int:
        """Delete rows matching equality/IN criteria. Empty criteria clears the table."""

    async def exists(self, table: str, criteria: Mapping[str, Any]) -> bool:
        rows = await self.query(table, QueryPlan.where(criteria, limit=1))
        return bool(rows)

    async def fetch_one(self, table: str, plan: QueryPlan):
        rows = await self.query(table, QueryPlan(plan.conditions, plan.order_by, 1, plan.offset))
        return rows[0] if rows else None


class Store(StoreScope):
    """Pooled persistence collaborator."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreScope]:
        """Dedicated connection/transaction scope, always released."""

    @abstractmethod
    async def close(self) -> None:
        """Release every connection."""

    async def create_schema(self) -> None:
        """Create tables and indexes if missing."""
