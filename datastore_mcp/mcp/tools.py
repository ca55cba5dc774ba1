"""MCP tool registry and dispatcher – the bridge between MCP protocol and executors."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, StrictInt, ValidationError, field_validator

from datastore_mcp.backends.base import BackendKind
from datastore_mcp.backends.document import DocumentConnectionManager
from datastore_mcp.backends.relational import RelationalConnectionManager
from datastore_mcp.errors import (
    BackendNotConfiguredError,
    ConfigurationError,
    ErrorMapper,
    InvalidArgumentsError,
    LimitExceededError,
    ToolError,
    UnknownToolError,
)
from datastore_mcp.schemas.common import ErrorDetail, Meta, QueryResult, ToolRequest, ToolResponse
from datastore_mcp.schemas.query import (
    DEFAULT_MAX_ROWS,
    HARD_MAX_ROWS,
    BoundedRows,
    QuerySpec,
    clamp_row_cap,
)
from datastore_mcp.services import document_service, relational_service
from datastore_mcp.services.normalizer import normalize_rows
from datastore_mcp.services.paging import run_with_deadline

if TYPE_CHECKING:
    from datastore_mcp.config import Settings

logger = logging.getLogger("mcp.tools")

# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class _Arguments(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class NoArguments(_Arguments):
    pass


def _non_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _default_when_null(value: int | None) -> int:
    # Clients send null for an omitted optional.
    return DEFAULT_MAX_ROWS if value is None else value


class ExecuteQueryArgs(_Arguments):
    query: str
    max_rows: StrictInt | None = DEFAULT_MAX_ROWS

    @field_validator("max_rows")
    @classmethod
    def max_rows_default(cls, v: int | None) -> int:
        return _default_when_null(v)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        return _non_blank(v)


class ListContainersArgs(_Arguments):
    database: str

    @field_validator("database")
    @classmethod
    def database_not_blank(cls, v: str) -> str:
        return _non_blank(v)


class QueryItemsArgs(_Arguments):
    query: str
    container: str
    database: str | None = None
    partition_key: str | None = None
    max_rows: StrictInt | None = DEFAULT_MAX_ROWS

    @field_validator("max_rows")
    @classmethod
    def max_rows_default(cls, v: int | None) -> int:
        return _default_when_null(v)

    @field_validator("query", "container")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _non_blank(v)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def _list_tables(conn: Any, args: NoArguments, dispatcher: ToolDispatcher) -> BoundedRows:
    return await relational_service.list_tables(conn)


async def _execute_query(
    conn: Any, args: ExecuteQueryArgs, dispatcher: ToolDispatcher
) -> BoundedRows:
    spec = QuerySpec(query=args.query, row_cap=args.max_rows)
    return await relational_service.execute_query(conn, spec, batch_size=dispatcher.page_size)


async def _list_databases(
    client: Any, args: NoArguments, dispatcher: ToolDispatcher
) -> BoundedRows:
    return await document_service.list_databases(client)


async def _list_containers(
    client: Any, args: ListContainersArgs, dispatcher: ToolDispatcher
) -> BoundedRows:
    return await document_service.list_containers(client, args.database)


async def _query_items(
    client: Any, args: QueryItemsArgs, dispatcher: ToolDispatcher
) -> BoundedRows:
    spec = QuerySpec(query=args.query, scope=args.database, row_cap=args.max_rows)
    return await document_service.query_items(
        client,
        spec,
        args.container,
        default_database=dispatcher.default_database,
        partition_key=args.partition_key,
        page_size=dispatcher.page_size,
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSpec:
    """Static description of one tool: routing, validation and JSON schema."""

    name: str
    backend: BackendKind
    description: str
    arguments: type[_Arguments]
    operation: Callable[[Any, Any, "ToolDispatcher"], Awaitable[BoundedRows]]
    input_schema: dict[str, Any] = field(default_factory=dict)


_MAX_ROWS_SCHEMA = {
    "type": ["integer", "null"],
    "description": (
        f"Maximum rows to return (default {DEFAULT_MAX_ROWS} when omitted or null; "
        f"values above {HARD_MAX_ROWS} are clamped)"
    ),
    "default": DEFAULT_MAX_ROWS,
}

TOOL_REGISTRY: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="list_tables",
            backend=BackendKind.RELATIONAL,
            description=(
                "List user tables in the SQL database. "
                "Returns rows with schema and table_name, ordered by schema then name."
            ),
            arguments=NoArguments,
            operation=_list_tables,
            input_schema={"type": "object", "properties": {}, "required": []},
        ),
        ToolSpec(
            name="execute_query",
            backend=BackendKind.RELATIONAL,
            description=(
                "Run a read-only T-SQL query against the SQL database and return the rows. "
                "Results are capped at max_rows; truncated is true when more rows existed."
            ),
            arguments=ExecuteQueryArgs,
            operation=_execute_query,
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "SQL text, executed verbatim"},
                    "max_rows": _MAX_ROWS_SCHEMA,
                },
                "required": ["query"],
            },
        ),
        ToolSpec(
            name="list_databases",
            backend=BackendKind.DOCUMENT,
            description="List the databases in the Cosmos DB account.",
            arguments=NoArguments,
            operation=_list_databases,
            input_schema={"type": "object", "properties": {}, "required": []},
        ),
        ToolSpec(
            name="list_containers",
            backend=BackendKind.DOCUMENT,
            description="List the containers in a Cosmos DB database.",
            arguments=ListContainersArgs,
            operation=_list_containers,
            input_schema={
                "type": "object",
                "properties": {
                    "database": {"type": "string", "description": "Cosmos DB database id"},
                },
                "required": ["database"],
            },
        ),
        ToolSpec(
            name="query_items",
            backend=BackendKind.DOCUMENT,
            description=(
                "Run a Cosmos DB SQL query (e.g. SELECT * FROM c WHERE c.status = 'open') "
                "against a container. Follows continuation pages up to max_rows documents."
            ),
            arguments=QueryItemsArgs,
            operation=_query_items,
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Cosmos DB SQL query text"},
                    "container": {"type": "string", "description": "Container id"},
                    "database": {
                        "type": "string",
                        "description": "Database id (defaults to COSMOS_DEFAULT_DATABASE)",
                    },
                    "partition_key": {
                        "type": "string",
                        "description": "Restrict the query to one partition (optional)",
                    },
                    "max_rows": _MAX_ROWS_SCHEMA,
                },
                "required": ["query", "container"],
            },
        ),
    )
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 2)


def _error_response(tool: str, error: ErrorDetail, elapsed: float) -> ToolResponse:
    return ToolResponse(
        tool=tool,
        ok=False,
        data=None,
        error=error,
        meta=Meta(execution_ms=elapsed, row_count=0),
    )


def _ok(tool: str, data: QueryResult, elapsed: float) -> ToolResponse:
    return ToolResponse(
        tool=tool,
        ok=True,
        data=data,
        error=None,
        meta=Meta(execution_ms=elapsed, row_count=len(data.rows)),
    )


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "arguments"
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Route tool requests to the backend executors.

    Both managers are injected; a ``None`` manager means the backend is not
    configured and its tools answer ``BackendNotConfigured`` with the reason
    given in *not_configured*.  Apart from the managers the dispatcher is
    read-only after construction.
    """

    def __init__(
        self,
        *,
        relational: RelationalConnectionManager | None = None,
        document: DocumentConnectionManager | None = None,
        error_mapper: ErrorMapper | None = None,
        query_timeout: float = 30.0,
        max_query_length: int = 100_000,
        page_size: int = 500,
        not_configured: dict[BackendKind, str] | None = None,
        registry: dict[str, ToolSpec] | None = None,
    ) -> None:
        self.relational = relational
        self.document = document
        self.error_mapper = error_mapper or ErrorMapper()
        self.query_timeout = query_timeout
        self.max_query_length = max_query_length
        self.page_size = page_size
        self.registry = registry if registry is not None else TOOL_REGISTRY
        self._not_configured = not_configured or {}
        self._abandoned: set[asyncio.Task] = set()

    @property
    def default_database(self) -> str | None:
        return self.document.default_database if self.document is not None else None

    def _manager(
        self, kind: BackendKind
    ) -> RelationalConnectionManager | DocumentConnectionManager:
        manager = self.relational if kind is BackendKind.RELATIONAL else self.document
        if manager is None:
            message = self._not_configured.get(kind, f"The {kind.value} backend is not configured")
            raise BackendNotConfiguredError(
                message,
                hint="Set the backend's environment variables and restart the server.",
            )
        return manager

    def _prepare(self, request: ToolRequest) -> tuple[ToolSpec, _Arguments]:
        """Routing and validation; performs no I/O."""
        spec = self.registry.get(request.name)
        if spec is None:
            raise UnknownToolError(
                f"Tool '{request.name}' is not registered",
                hint=f"Available tools: {sorted(self.registry)}",
            )
        try:
            args = spec.arguments.model_validate(request.arguments or {})
        except ValidationError as exc:
            raise InvalidArgumentsError(
                f"Invalid arguments for {spec.name}: {_format_validation_error(exc)}"
            ) from exc

        query = getattr(args, "query", None)
        if query is not None and len(query) > self.max_query_length:
            raise LimitExceededError(
                f"Query text is {len(query)} characters; the limit is {self.max_query_length}",
                hint="Shorten the query.",
            )
        return spec, args

    async def _run(
        self,
        manager: RelationalConnectionManager | DocumentConnectionManager,
        spec: ToolSpec,
        args: _Arguments,
    ) -> BoundedRows:
        async with manager.lease() as handle:
            return await spec.operation(handle.resource, args, self)

    async def dispatch(self, request: ToolRequest) -> ToolResponse:
        """Run one tool call and wrap the outcome in a ``ToolResponse``.

        Every failure is returned as an error payload.  Cancellation of the
        calling task is the one exception that propagates.  The deadline
        covers waiting for a handle as well as the query; a call that misses
        it is answered at once while its handle is discarded in the
        background.
        """
        t0 = time.perf_counter()
        try:
            spec, args = self._prepare(request)
            manager = self._manager(spec.backend)
            bounded = await run_with_deadline(
                self._run(manager, spec, args),
                self.query_timeout,
                background=self._abandoned,
            )
            row_cap = getattr(args, "max_rows", HARD_MAX_ROWS)
            result = normalize_rows(bounded, clamp_row_cap(row_cap))
        except Exception as exc:
            elapsed = _elapsed_ms(t0)
            error = self.error_mapper.to_detail(exc, tool=request.name)
            log = logger.info if isinstance(exc, ToolError) else logger.warning
            log("%s failed kind=%s ms=%.1f", request.name, error.kind.value, elapsed)
            return _error_response(request.name, error, elapsed)

        elapsed = _elapsed_ms(t0)
        logger.info(
            "%s rows=%d truncated=%s ms=%.1f",
            request.name,
            len(result.rows),
            result.truncated,
            elapsed,
        )
        return _ok(request.name, result, elapsed)

    async def drain(self) -> None:
        """Wait until calls abandoned at their deadline have released their handles."""
        if self._abandoned:
            await asyncio.gather(*list(self._abandoned), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        for manager in (self.relational, self.document):
            if manager is not None:
                await manager.aclose()

    def status(self) -> dict[str, Any]:
        backends: dict[str, Any] = {}
        for kind, manager in (
            (BackendKind.RELATIONAL, self.relational),
            (BackendKind.DOCUMENT, self.document),
        ):
            if manager is not None:
                backends[kind.value] = manager.status()
            elif kind in self._not_configured:
                backends[kind.value] = {"kind": kind.value, "state": "NotConfigured"}
        return backends


def build_dispatcher(settings: Settings) -> ToolDispatcher:
    """Construct managers for every configured backend and the dispatcher over them.

    Raises:
        ConfigurationError: neither backend is configured.
    """
    if not settings.enabled_backends():
        raise ConfigurationError(
            "No backend configured: set MSSQL_CONNECTION_STRING and/or "
            "COSMOS_ENDPOINT + COSMOS_KEY"
        )

    not_configured: dict[BackendKind, str] = {}
    relational = None
    document = None

    if settings.relational_enabled:
        relational = RelationalConnectionManager.from_settings(settings)
    else:
        not_configured[BackendKind.RELATIONAL] = (
            "The SQL backend is not configured (MSSQL_CONNECTION_STRING is not set)"
        )

    if settings.document_usable:
        document = DocumentConnectionManager.from_settings(settings)
    elif settings.document_enabled:
        not_configured[BackendKind.DOCUMENT] = (
            "The Cosmos DB backend is not usable: COSMOS_ENDPOINT is set but COSMOS_KEY is missing"
        )
    else:
        not_configured[BackendKind.DOCUMENT] = (
            "The Cosmos DB backend is not configured (COSMOS_ENDPOINT and COSMOS_KEY are not set)"
        )

    return ToolDispatcher(
        relational=relational,
        document=document,
        error_mapper=ErrorMapper(settings.secret_values()),
        query_timeout=settings.query_timeout_seconds,
        max_query_length=settings.max_query_length,
        page_size=settings.page_size,
        not_configured=not_configured,
    )
