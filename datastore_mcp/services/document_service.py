"""Cosmos DB query executor (catalog listing and SQL-API item queries)."""

from __future__ import annotations

from typing import Any, AsyncIterator

from azure.cosmos.exceptions import CosmosResourceNotFoundError

from datastore_mcp.errors import InvalidArgumentsError, NotFoundError
from datastore_mcp.schemas.query import HARD_MAX_ROWS, BoundedRows, QuerySpec, ResultPage
from datastore_mcp.services.paging import collect_bounded

DEFAULT_PAGE_SIZE = 500


async def _catalog(pager: Any) -> BoundedRows:
    names: list[dict[str, Any]] = []
    async for entry in pager:
        names.append({"id": entry["id"]})
        if len(names) > HARD_MAX_ROWS:
            break
    return BoundedRows(rows=names[:HARD_MAX_ROWS], truncated=len(names) > HARD_MAX_ROWS)


async def list_databases(client: Any) -> BoundedRows:
    """List every database in the account as ``{id}`` rows."""
    return await _catalog(client.list_databases())


async def list_containers(client: Any, database: str) -> BoundedRows:
    """List the containers of *database* as ``{id}`` rows.

    Raises:
        NotFoundError: the database does not exist.
    """
    try:
        return await _catalog(client.get_database_client(database).list_containers())
    except CosmosResourceNotFoundError as exc:
        raise NotFoundError(
            f"Database '{database}' does not exist",
            hint="Use list_databases to see the available databases.",
        ) from exc


def resolve_database(spec: QuerySpec, default_database: str | None) -> str:
    """``spec.scope`` if given, else the configured default."""
    database = spec.scope or default_database
    if not database:
        raise InvalidArgumentsError(
            "database is required when COSMOS_DEFAULT_DATABASE is not set",
            hint="Pass the database argument or configure COSMOS_DEFAULT_DATABASE.",
        )
    return database


async def _item_pages(pager: Any) -> AsyncIterator[ResultPage]:
    pages = pager.by_page()
    async for page in pages:
        items = [item async for item in page]
        yield ResultPage(rows=items, continuation=getattr(pages, "continuation_token", None))


async def query_items(
    client: Any,
    spec: QuerySpec,
    container: str,
    *,
    default_database: str | None = None,
    partition_key: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> BoundedRows:
    """Run a SQL-API query against *container*, following continuation tokens.

    Pages are concatenated in arrival order until the backend has no more
    pages or one document past ``spec.row_cap`` has been seen.

    Args:
        client: Shared Cosmos client from the document connection manager.
        spec: Query text, optional database scope and row cap.
        container: Container to query.
        default_database: Used when ``spec.scope`` is not set.
        partition_key: Scope the query to one logical partition; ``None``
            issues a cross-partition query.
        page_size: Upper bound on documents per backend page.

    Raises:
        InvalidArgumentsError: no database given and no default configured.
        NotFoundError: the database or container does not exist.
    """
    database = resolve_database(spec, default_database)
    container_client = client.get_database_client(database).get_container_client(container)

    kwargs: dict[str, Any] = {
        "query": spec.query,
        "max_item_count": min(page_size, spec.row_cap + 1),
    }
    if partition_key is not None:
        kwargs["partition_key"] = partition_key

    try:
        pager = container_client.query_items(**kwargs)
        return await collect_bounded(_item_pages(pager), spec.row_cap)
    except CosmosResourceNotFoundError as exc:
        raise NotFoundError(
            f"Container '{container}' was not found in database '{database}'",
            hint="Use list_containers to see the available containers.",
        ) from exc
