"""
Query Plans

Typed filter/order/limit/offset plans for Store.query(), plus the interpreter
that turns API search strings into plans.

Search grammar:
    ?<cond>[&|<cond>]...    where <cond> is  column[op value]
    op     one of  = <> < > <= >=
    value  [0-9a-z-.*]+ ; '*' is a wildcard (= becomes LIKE, <> NOT LIKE)

`limit` and `offset` are consumed as paging parameters. Conditions without a
value or that do not match the grammar are ignored. Values are never
interpolated into SQL; every Store binds them as parameters.
"""

import re
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .schema import TableDef

CONDITION = re.compile(r'^([0-9a-z_]+)(?:(<>|<=|>=|<|>|=)([0-9a-z\-.*]+))?$', re.IGNORECASE)
SEPARATORS = '?&|'

COMPARISONS = ('=', '<>', '<', '>', '<=', '>=')
OPERATORS = COMPARISONS + ('LIKE', 'NOT LIKE', 'IN')

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


class QueryError(ValueError):
    """Search string or plan refers to something the table does not allow."""


@dataclass(frozen=True)
class Condition:
    column: str
    op: str
    value: Any
    # Connector to the previous condition ("AND" / "OR"); ignored for the first
    join: str = "AND"

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise QueryError(f"Unsupported operator: {self.op}")
        if self.join not in ("AND", "OR"):
            raise QueryError(f"Unsupported connector: {self.join}")


@dataclass(frozen=True)
class QueryPlan:
    conditions: Tuple[Condition, ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def where(cls, criteria: Optional[Mapping[str, Any]] = None, **kwargs) -> "QueryPlan":
        """Plan of ANDed equality (or IN, for list values) conditions."""
        return cls(conditions=equality(criteria or {}), **kwargs)

    def and_where(self, criteria: Mapping[str, Any]) -> "QueryPlan":
        """
        Restrict the plan with additional equality conditions.

        Existing conditions are kept as one group, so OR connectors in a
        search cannot widen the added restriction.
        """
        added = equality(criteria)
        if not self.conditions:
            return replace(self, conditions=added)
        if any(c.join == "OR" for c in self.conditions[1:]):
            # (a OR b) AND c == (a AND c) OR (b AND c)
            groups = split_groups(self.conditions)
            conditions: List[Condition] = []
            for group in groups:
                for i, cond in enumerate(group + list(added)):
                    join = "OR" if (i == 0 and conditions) else "AND"
                    conditions.append(replace(cond, join=join))
            return replace(self, conditions=tuple(conditions))
        return replace(self, conditions=self.conditions + added)

    def validate(self, table: TableDef) -> "QueryPlan":
        for cond in self.conditions:
            if not table.has_column(cond.column):
                raise QueryError(f"Unknown column '{cond.column}' for {table.name}")
        for column, direction in self.order_by:
            if not table.has_column(column):
                raise QueryError(f"Unknown order column '{column}' for {table.name}")
            if direction.upper() not in ("ASC", "DESC"):
                raise QueryError(f"Unknown order direction '{direction}'")
        return self


def equality(criteria: Mapping[str, Any]) -> Tuple[Condition, ...]:
    conditions = []
    for column, value in criteria.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            conditions.append(Condition(column, 'IN', tuple(value)))
        else:
            conditions.append(Condition(column, '=', value))
    return tuple(conditions)


def split_groups(conditions: Iterable[Condition]) -> List[List[Condition]]:
    """Split a condition chain at OR connectors (AND binds tighter)."""
    groups: List[List[Condition]] = []
    for cond in conditions:
        if not groups or cond.join == "OR":
            groups.append([cond])
        else:
            groups[-1].append(cond)
    return groups


def parse_search(
    search: str,
    table: TableDef,
    order_by: Optional[Tuple[Tuple[str, str], ...]] = None,
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
) -> QueryPlan:
    """
    Interpret an API search string into a QueryPlan for `table`.

    Raises:
        QueryError: a condition names a column outside the table's whitelist
    """
    limit = default_limit
    offset = 0
    conditions: List[Condition] = []

    if search and search[0] not in SEPARATORS:
        search = '?' + search

    for separator, text in _split(search or ''):
        matched = CONDITION.match(text)
        if not matched:
            continue
        column, op, value = matched.groups()
        if not value:
            continue
        column = column.lower()

        if column == 'limit':
            limit = _to_int(value, default_limit)
            limit = max(0, min(limit, max_limit)) or default_limit
            continue
        if column == 'offset':
            offset = max(0, _to_int(value, 0))
            continue

        if not table.has_column(column):
            raise QueryError(f"Unknown column '{column}' for {table.name}")

        if '*' in value:
            value = value.replace('*', '%')
            if op == '<>':
                op = 'NOT LIKE'
            elif op == '=':
                op = 'LIKE'

        join = "OR" if separator == '|' else "AND"
        conditions.append(Condition(column, op, value, join))

    return QueryPlan(
        conditions=tuple(conditions),
        order_by=order_by if order_by is not None else table.default_order,
        limit=limit,
        offset=offset,
    )


def _split(search: str) -> List[Tuple[str, str]]:
    parts = []
    start = None
    for i, char in enumerate(search):
        if char in SEPARATORS:
            if start is not None:
                parts.append((search[start], search[start + 1:i]))
            start = i
    if start is not None:
        parts.append((search[start], search[start + 1:]))
    return parts


def _to_int(value: str, default: int) -> int:
    try:
        return int(value)
    except ValueError:
        return default


# ==================== In-process evaluation ====================

def coerce(value: Any, sample: Any) -> Any:
    """Convert a search value to the type of the stored column value."""
    if sample is None or value is None or isinstance(value, type(sample)):
        return value
    try:
        if isinstance(sample, bool):
            return str(value).lower() in ('1', 'true')
        if isinstance(sample, int):
            return int(value)
        if isinstance(sample, (float, Decimal)):
            return type(sample)(value)
    except (TypeError, ValueError, ArithmeticError):
        return value
    return value


def like(pattern: str, text: Any) -> bool:
    regex = ''.join(
        '.*' if ch == '%' else '.' if ch == '_' else re.escape(ch)
        for ch in str(pattern)
    )
    return re.fullmatch(regex, '' if text is None else str(text), re.IGNORECASE | re.DOTALL) is not None


def compare(cond: Condition, row: Mapping[str, Any]) -> bool:
    actual = row.get(cond.column)
    if cond.op == 'LIKE':
        return like(cond.value, actual)
    if cond.op == 'NOT LIKE':
        return not like(cond.value, actual)
    if cond.op == 'IN':
        return any(actual == coerce(v, actual) for v in cond.value)

    expected = coerce(cond.value, actual)
    if cond.op == '=':
        return actual == expected
    if cond.op == '<>':
        return actual != expected
    if actual is None or expected is None:
        return False
    try:
        if cond.op == '<':
            return actual < expected
        if cond.op == '>':
            return actual > expected
        if cond.op == '<=':
            return actual <= expected
        return actual >= expected
    except TypeError:
        return False


def matches(conditions: Iterable[Condition], row: Mapping[str, Any]) -> bool:
    """Evaluate a condition chain with SQL precedence (AND before OR)."""
    groups = split_groups(conditions)
    if not groups:
        return True
    return any(all(compare(c, row) for c in group) for group in groups)


def apply_plan(rows: Iterable[Dict[str, Any]], plan: QueryPlan) -> List[Dict[str, Any]]:
    selected = [row for row in rows if matches(plan.conditions, row)]
    for column, direction in reversed(plan.order_by):
        selected.sort(
            key=lambda r: (r.get(column) is None, r.get(column) if r.get(column) is not None else 0),
            reverse=direction.upper() == 'DESC',
        )
    end = None if plan.limit is None else plan.offset + plan.limit
    return [dict(row) for row in selected[plan.offset:end]]
