"""Relational query executor (tables listing and pass-through reads)."""

from __future__ import annotations

from typing import Any, AsyncIterator

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql.elements import TextClause

from datastore_mcp.schemas.query import HARD_MAX_ROWS, BoundedRows, QuerySpec, ResultPage
from datastore_mcp.services.paging import collect_bounded

DEFAULT_BATCH_SIZE = 500

_SYSTEM_SCHEMAS = frozenset(
    {
        "sys",
        "information_schema",
        "guest",
        "db_owner",
        "db_accessadmin",
        "db_securityadmin",
        "db_ddladmin",
        "db_backupoperator",
        "db_datareader",
        "db_datawriter",
        "db_denydatareader",
        "db_denydatawriter",
    }
)


def _is_system_schema(schema: str) -> bool:
    lowered = schema.lower()
    return lowered in _SYSTEM_SCHEMAS or lowered.startswith("pg_")


def _collect_tables(sync_conn: Connection) -> list[dict[str, Any]]:
    inspector = inspect(sync_conn)
    tables: list[dict[str, Any]] = []
    for schema in inspector.get_schema_names():
        if _is_system_schema(schema):
            continue
        for name in inspector.get_table_names(schema=schema):
            tables.append({"schema": schema, "table_name": name})
    tables.sort(key=lambda t: (t["schema"].lower(), t["table_name"].lower()))
    return tables


async def list_tables(conn: AsyncConnection) -> BoundedRows:
    """List user tables as ``{schema, table_name}`` rows, ordered by schema then name.

    System catalogs (``sys``, ``INFORMATION_SCHEMA``, ``pg_*`` and the fixed
    database roles) are skipped.
    """
    tables = await conn.run_sync(_collect_tables)
    return BoundedRows(rows=tables[:HARD_MAX_ROWS], truncated=len(tables) > HARD_MAX_ROWS)


def unique_columns(names: list[str]) -> list[str]:
    """Suffix repeated column names (``id``, ``id_1``) so no value is overwritten."""
    seen = set(names)
    counts: dict[str, int] = {}
    result: list[str] = []
    for name in names:
        if name not in counts:
            counts[name] = 0
            result.append(name)
            continue
        candidate = name
        while candidate in seen:
            counts[name] += 1
            candidate = f"{name}_{counts[name]}"
        seen.add(candidate)
        result.append(candidate)
    return result


def _verbatim(query: str) -> TextClause:
    # Escape colons so text() does not read ":name" as a bind parameter.
    return text(query.replace(":", "\\:"))


async def _stream_pages(
    conn: AsyncConnection,
    query: str,
    limit: int,
    batch_size: int,
) -> AsyncIterator[ResultPage]:
    """Yield pages from a forward-only cursor, reading at most *limit* rows.

    The cursor is closed whenever the generator stops, including early exit
    and cancellation.
    """
    result = await conn.stream(_verbatim(query))
    try:
        columns = unique_columns(list(result.keys()))
        fetched = 0
        while fetched < limit:
            wanted = min(batch_size, limit - fetched)
            batch = await result.fetchmany(wanted)
            fetched += len(batch)
            exhausted = len(batch) < wanted
            yield ResultPage(
                rows=[dict(zip(columns, row)) for row in batch],
                exhausted=exhausted,
            )
            if exhausted:
                return
    finally:
        await result.close()


async def execute_query(
    conn: AsyncConnection,
    spec: QuerySpec,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> BoundedRows:
    """Run ``spec.query`` verbatim and return at most ``spec.row_cap`` rows.

    Args:
        conn: Exclusively held connection from the relational pool.
        spec: Query text and row cap.
        batch_size: Rows requested from the cursor per fetch.

    Returns:
        ``BoundedRows`` with ``truncated`` set when the cursor held more rows
        than the cap.  A query that yields no rows returns an empty list.
    """
    pages = _stream_pages(conn, spec.query, spec.row_cap + 1, batch_size)
    return await collect_bounded(pages, spec.row_cap)
