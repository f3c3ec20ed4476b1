"""
PostgreSQL Store

psycopg2-backed implementation of the Store interface.

Blocking driver calls are offloaded to the default executor so the event
loop never waits on the database. Connections come from a
ThreadedConnectionPool; plain calls commit immediately, transaction() pins one
connection until the scope exits.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import errorcodes, extras, sql
from psycopg2.pool import ThreadedConnectionPool

from ..config import DatabaseConfig
from .base import Store, StoreScope
from .errors import DuplicateKeyError, StoreError
from .query import Condition, QueryPlan
from .schema import DDL, TableDef, get_table

logger = logging.getLogger(__name__)


# ==================== SQL builders ====================

def build_where(conditions: Sequence[Condition]) -> Tuple[sql.Composable, List[Any]]:
    """WHERE clause body and bound parameters for a condition chain."""
    parts: List[sql.Composable] = []
    params: List[Any] = []

    for i, cond in enumerate(conditions):
        if i:
            parts.append(sql.SQL(" OR " if cond.join == "OR" else " AND "))
        column = sql.Identifier(cond.column)

        if cond.op in ('LIKE', 'NOT LIKE'):
            parts.append(sql.SQL("CAST({} AS TEXT) {} %s").format(column, sql.SQL(cond.op)))
            params.append(cond.value)
        elif cond.op == 'IN':
            if not cond.value:
                parts.append(sql.SQL("FALSE"))
                continue
            parts.append(sql.SQL("{} IN %s").format(column))
            params.append(tuple(cond.value))
        elif cond.value is None and cond.op in ('=', '<>'):
            null_test = "IS NULL" if cond.op == '=' else "IS NOT NULL"
            parts.append(sql.SQL("{} " + null_test).format(column))
        else:
            parts.append(sql.SQL("{} {} %s").format(column, sql.SQL(cond.op)))
            params.append(cond.value)

    return sql.Composed(parts), params


def build_select(table: TableDef, plan: QueryPlan) -> Tuple[sql.Composable, List[Any]]:
    plan.validate(table)
    query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table.name))
    params: List[Any] = []

    if plan.conditions:
        where, params = build_where(plan.conditions)
        query = sql.SQL("{} WHERE {}").format(query, where)

    if plan.order_by:
        order = sql.SQL(", ").join(
            sql.SQL("{} " + direction.upper()).format(sql.Identifier(column))
            for column, direction in plan.order_by
        )
        query = sql.SQL("{} ORDER BY {}").format(query, order)

    if plan.limit is not None:
        query = sql.SQL("{} LIMIT %s").format(query)
        params.append(plan.limit)
    if plan.offset:
        query = sql.SQL("{} OFFSET %s").format(query)
        params.append(plan.offset)

    return query, params


def build_insert(table: TableDef, row: Mapping[str, Any]) -> Tuple[sql.Composable, List[Any]]:
    columns = [c for c in table.columns if c in row]
    query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table.name),
        sql.SQL(", ").join(map(sql.Identifier, columns)),
        sql.SQL(", ").join(sql.Placeholder() * len(columns)),
    )
    return query, [row[c] for c in columns]


def build_upsert(table: TableDef, columns: Sequence[str]) -> sql.Composable:
    """INSERT ... VALUES %s ON CONFLICT for execute_values()."""
    query = sql.SQL("INSERT INTO {} ({}) VALUES %s ON CONFLICT ({})").format(
        sql.Identifier(table.name),
        sql.SQL(", ").join(map(sql.Identifier, columns)),
        sql.SQL(", ").join(map(sql.Identifier, table.primary_key)),
    )
    updates = [c for c in table.upsert if c in columns]
    if not updates:
        return sql.SQL("{} DO NOTHING").format(query)
    assignments = sql.SQL(", ").join(
        sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
    )
    return sql.SQL("{} DO UPDATE SET {}").format(query, assignments)


def build_delete(table: TableDef, criteria: Mapping[str, Any]) -> Tuple[sql.Composable, List[Any]]:
    plan = QueryPlan.where(criteria).validate(table)
    query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table.name))
    if not plan.conditions:
        return query, []
    where, params = build_where(plan.conditions)
    return sql.SQL("{} WHERE {}").format(query, where), params


def translate_error(table: str, error: psycopg2.Error) -> StoreError:
    if getattr(error, 'pgcode', None) == errorcodes.UNIQUE_VIOLATION:
        return DuplicateKeyError(table, str(error).strip())
    return StoreError(f"{table}: {str(error).strip() or type(error).__name__}")


# ==================== Synchronous operations ====================
# Each runs against one cursor; callers own commit/rollback.

def _insert(table: TableDef, row: Mapping[str, Any], cur) -> int:
    query, params = build_insert(table, row)
    cur.execute(query, params)
    return cur.rowcount


def _bulk_load(table: TableDef, rows: Sequence[Mapping[str, Any]], cur) -> int:
    columns = [c for c in table.columns if c in rows[0]]
    values = [tuple(row.get(c) for c in columns) for row in rows]
    extras.execute_values(cur, build_upsert(table, columns), values, page_size=max(len(values), 1))
    return cur.rowcount


def _select(table: TableDef, plan: QueryPlan, cur) -> List[Dict[str, Any]]:
    query, params = build_select(table, plan)
    cur.execute(query, params)
    return [dict(row) for row in cur.fetchall()]


def _delete(table: TableDef, criteria: Mapping[str, Any], cur) -> int:
    query, params = build_delete(table, criteria)
    cur.execute(query, params)
    return cur.rowcount


class PostgresScope(StoreScope):
    """Operations pinned to one pooled connection inside a transaction."""

    def __init__(self, store: "PostgresStore", conn):
        self._store = store
        self._conn = conn

    async def _call(self, table: TableDef, op: Callable) -> Any:
        return await self._store._offload(self._store._run_on, self._conn, table, op, False)

    async def insert_row(self, table: str, row: Mapping[str, Any]) -> int:
        tdef = get_table(table)
        return await self._call(tdef, partial(_insert, tdef, row))

    async def bulk_load(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        tdef = get_table(table)
        return await self._call(tdef, partial(_bulk_load, tdef, rows))

    async def query(self, table: str, plan: QueryPlan) -> List[Dict[str, Any]]:
        tdef = get_table(table)
        return await self._call(tdef, partial(_select, tdef, plan))

    async def delete(self, table: str, criteria: Mapping[str, Any]) -> int:
        tdef = get_table(table)
        return await self._call(tdef, partial(_delete, tdef, criteria))


class PostgresStore(Store):
    """
    Pooled PostgreSQL store.

    Usage:
        store = PostgresStore(DatabaseConfig())
        await store.insert_row('block', block.to_row())
        async with store.transaction() as scope:
            await scope.bulk_load('transaction', rows)
        await store.close()
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, pool=None):
        self._config = config or DatabaseConfig()
        self._pool = pool
        self._closed = False

    # ==================== Connection handling ====================

    def _get_pool(self):
        if self._pool is None:
            try:
                self._pool = ThreadedConnectionPool(
                    self._config.pool_min,
                    self._config.pool_max,
                    **self._config.dsn_kwargs(),
                )
                logger.info(f"Database pool ready ({self._config.host}:{self._config.port}/{self._config.name})")
            except psycopg2.Error as e:
                raise StoreError(f"Failed to connect to database: {e}")
        return self._pool

    def _getconn(self):
        if self._closed:
            raise StoreError("Store is closed")
        try:
            return self._get_pool().getconn()
        except psycopg2.Error as e:
            raise StoreError(f"Failed to acquire connection: {e}")

    def _putconn(self, conn) -> None:
        if self._pool is None:
            return
        try:
            self._pool.putconn(conn, close=bool(getattr(conn, 'closed', False)))
        except psycopg2.Error as e:
            logger.warning(f"Failed to release connection: {e}")

    def _run_on(self, conn, table: TableDef, op: Callable, commit: bool) -> Any:
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                result = op(cur)
            if commit:
                conn.commit()
            return result
        except psycopg2.Error as e:
            if commit:
                self._rollback(conn)
            raise translate_error(table.name, e)

    def _run(self, table: TableDef, op: Callable) -> Any:
        conn = self._getconn()
        try:
            return self._run_on(conn, table, op, True)
        finally:
            self._putconn(conn)

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")

    async def _offload(self, fn: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    # ==================== Store interface ====================

    async def insert_row(self, table: str, row: Mapping[str, Any]) -> int:
        tdef = get_table(table)
        return await self._offload(self._run, tdef, partial(_insert, tdef, row))

    async def bulk_load(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        tdef = get_table(table)
        return await self._offload(self._run, tdef, partial(_bulk_load, tdef, rows))

    async def query(self, table: str, plan: QueryPlan) -> List[Dict[str, Any]]:
        tdef = get_table(table)
        return await self._offload(self._run, tdef, partial(_select, tdef, plan))

    async def delete(self, table: str, criteria: Mapping[str, Any]) -> int:
        tdef = get_table(table)
        return await self._offload(self._run, tdef, partial(_delete, tdef, criteria))

    @asynccontextmanager
    async def transaction(self):
        conn = await self._offload(self._getconn)
        try:
            yield PostgresScope(self, conn)
            try:
                await self._offload(conn.commit)
            except psycopg2.Error as e:
                raise StoreError(f"Commit failed: {e}")
        except BaseException:
            await self._offload(self._rollback, conn)
            raise
        finally:
            await self._offload(self._putconn, conn)

    async def create_schema(self) -> None:
        def _ddl(cur):
            cur.execute(DDL)
        await self._offload(self._run, get_table('block'), _ddl)
        logger.info("Schema created")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            await self._offload(self._pool.closeall)
        logger.info("Database pool closed")
