from supabase import AsyncClient
from typing import Any, Optional
import re
from .logger import logger

# Postgres unique_violation
_UNIQUE_VIOLATION = "23505"
_CONSTRAINT_RE = re.compile(r'unique constraint "([^"]+)"')


class DuplicateRowError(Exception):
    """Insert rejected by a unique constraint."""

    def __init__(self, table_name: str, constraint: str | None, raw: Exception):
        super().__init__(f"duplicate row in {table_name} (constraint={constraint})")
        self.table_name = table_name
        self.constraint = constraint
        self.raw = raw


def _duplicate_constraint(exc: Exception) -> str | None:
    """Return the violated constraint name if *exc* is a duplicate-key error.

    Returns ``""`` when the error is a duplicate but the constraint name could
    not be parsed, ``None`` when it is not a duplicate at all.
    """
    # supabase errors are badly structured and must cast to string and parsed
    text = getattr(exc, "message", None) or str(exc)
    if getattr(exc, "code", None) != _UNIQUE_VIOLATION and "duplicate" not in text.lower():
        return None
    match = _CONSTRAINT_RE.search(text)
    return match.group(1) if match else ""


def _apply_filters(query, filters: dict | None):
    """Apply dict filters to a PostgREST builder.

    Keys are column names; values are either a plain value (equality) or a
    tuple ``(operator, value)``.  Supported operators: 'eq', 'in', 'gt', 'lt',
    'gte', 'lte', 'neq', 'is' and 'not_is' (``is not null`` style checks).
    """
    if not filters:
        return query
    for key, condition in filters.items():
        if isinstance(condition, tuple):  # Special operator cases
            operator, value = condition
            if operator == "in":
                query = query.in_(key, value)
            elif operator == "is":
                query = query.is_(key, value)
            elif operator == "not_is":
                query = query.not_.is_(key, value)
            elif operator == "gt":
                query = query.gt(key, value)
            elif operator == "lt":
                query = query.lt(key, value)
            elif operator == "gte":
                query = query.gte(key, value)
            elif operator == "lte":
                query = query.lte(key, value)
            elif operator == "neq":
                query = query.neq(key, value)
            elif operator == "eq":
                query = query.eq(key, value)
            else:
                raise ValueError(f"unsupported filter operator: {operator}")
        else:  # Default to equality check
            query = query.eq(key, condition)
    return query


async def insert_data(
    supabase: AsyncClient,
    table_name: str,
    data: dict,
) -> dict[str, Any]:
    """Insert one row and return it as stored.

    Raises :class:`DuplicateRowError` when a unique constraint rejects the
    row; every other error is logged and re-raised unchanged.
    """
    try:
        response = await supabase.table(table_name).insert(data).execute()
    except Exception as e:
        constraint = _duplicate_constraint(e)
        if constraint is not None:
            raise DuplicateRowError(table_name, constraint or None, e) from e
        logger.error(f"Error during insert to {table_name}: {e}")
        raise

    rows = getattr(response, "data", None) or []
    return rows[0] if rows else data


async def query_data(
    supabase: AsyncClient,
    table_name: str,
    filters: dict = None,
    order_by: tuple = None,
    select_fields: str = "*",
    limit: Optional[int] = None,
    count: Optional[str] = None,
):
    """
    Query a Supabase table with dynamic filters, ordering, limit, and count.

    :param table_name: Name of the table to query.
    :param filters: See :func:`_apply_filters`.
    :param order_by: Tuple (column_name, desc) where desc=True means descending order.
    :param select_fields: Fields to select (default is "*").
    :param limit: Optional integer to limit the number of results.
    :param count: Optional string to specify count method (e.g., 'exact').
    :return: Query result from Supabase.
    """
    query = supabase.table(table_name).select(select_fields, count=count)
    query = _apply_filters(query, filters)

    if order_by:
        column, desc = order_by
        query = query.order(column, desc=desc)

    if limit:
        query = query.limit(limit)

    return await query.execute()


async def update_data(
    supabase: AsyncClient,
    table_name: str,
    *,
    update_values: dict,
    filters: dict,
    error_message: str = "Update failed",
) -> list[dict[str, Any]]:
    """Update the rows matching *filters* and return them.

    The length of the returned list is the matched-row count, which callers
    use to detect "not found" and lost compare-and-set races.
    """
    if not filters:
        raise ValueError(f"{error_message}: refusing unfiltered update of {table_name}")
    try:
        query = _apply_filters(supabase.table(table_name).update(update_values), filters)
        response = await query.execute()
    except Exception as e:
        logger.error(f"Error in {error_message}: {e}")
        raise
    return getattr(response, "data", None) or []


async def query_one(
    supabase: AsyncClient,
    table_name: str,
    match: dict | None = None,
    order_by: tuple | None = None,
    select_fields: str = "*",
):
    """Return the first (or *None*) row that matches the filters."""
    resp = await query_data(
        supabase,
        table_name,
        filters=match or {},
        order_by=order_by,
        select_fields=select_fields,
        limit=1,
    )
    # Supabase Python client returns a .data attribute on the response object.
    rows = getattr(resp, "data", None) or []
    return rows[0] if rows else None


async def query_many(
    supabase: AsyncClient,
    table_name: str,
    match: dict | None = None,
    order_by: tuple | None = None,
    select_fields: str = "*",
    limit: int | None = None,
):
    """Return a list of rows that match the filters (empty list if none)."""
    resp = await query_data(
        supabase,
        table_name,
        filters=match or {},
        order_by=order_by,
        select_fields=select_fields,
        limit=limit,
    )
    return getattr(resp, "data", None) or []
