"""Tests for the tool dispatcher – routing, validation, limits and the response envelope."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from datastore_mcp.backends.base import BackendKind, HandleState
from datastore_mcp.config import Settings
from datastore_mcp.errors import ConfigurationError, ErrorMapper
from datastore_mcp.mcp.tools import (
    TOOL_REGISTRY,
    ExecuteQueryArgs,
    QueryItemsArgs,
    ToolDispatcher,
    build_dispatcher,
)
from datastore_mcp.schemas.common import ToolRequest

COSMOS_KEY_MISSING = "COSMOS_ENDPOINT is set but COSMOS_KEY is missing"


async def _call(dispatcher: ToolDispatcher, name: str, **arguments):
    response = await dispatcher.dispatch(ToolRequest(name=name, arguments=arguments))
    return response.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Routing & validation (no backend I/O)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_tool_never_touches_a_manager():
    relational = MagicMock()
    document = MagicMock()
    dispatcher = ToolDispatcher(relational=relational, document=document)

    result = await _call(dispatcher, "drop_everything")

    assert result["ok"] is False
    assert result["error"]["kind"] == "UnknownTool"
    assert "drop_everything" in result["error"]["message"]
    assert relational.mock_calls == []
    assert document.mock_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name,arguments",
    [
        ("execute_query", {}),
        ("execute_query", {"query": "   "}),
        ("execute_query", {"query": "SELECT 1", "max_rows": "many"}),
        ("execute_query", {"query": "SELECT 1", "max_rows": True}),
        ("execute_query", {"query": "SELECT 1", "max_rows": 2.5}),
        ("query_items", {"query": "SELECT * FROM c", "container": "Items", "max_rows": False}),
        ("execute_query", {"query": 42}),
        ("list_containers", {}),
        ("query_items", {"query": "SELECT * FROM c"}),
        ("query_items", {"container": "Items"}),
    ],
)
async def test_malformed_arguments(name, arguments):
    relational = MagicMock()
    document = MagicMock()
    dispatcher = ToolDispatcher(relational=relational, document=document)

    result = await _call(dispatcher, name, **arguments)

    assert result["ok"] is False
    assert result["error"]["kind"] == "InvalidArguments"
    assert relational.mock_calls == []
    assert document.mock_calls == []


@pytest.mark.asyncio
async def test_query_text_over_limit():
    dispatcher = ToolDispatcher(relational=MagicMock(), max_query_length=20)
    result = await _call(dispatcher, "execute_query", query="SELECT " + "x, " * 20 + "1")

    assert result["error"]["kind"] == "LimitExceeded"


@pytest.mark.asyncio
async def test_backend_not_configured_names_cosmos_key(relational_manager):
    dispatcher = ToolDispatcher(
        relational=relational_manager,
        not_configured={BackendKind.DOCUMENT: f"Cosmos DB unusable: {COSMOS_KEY_MISSING}"},
    )
    result = await _call(dispatcher, "query_items", query="SELECT * FROM c", container="Items")

    assert result["ok"] is False
    assert result["error"]["kind"] == "BackendNotConfigured"
    assert "COSMOS_KEY" in result["error"]["message"]


@pytest.mark.asyncio
async def test_validation_precedes_backend_check():
    dispatcher = ToolDispatcher()
    result = await _call(dispatcher, "list_containers")
    assert result["error"]["kind"] == "InvalidArguments"


# ---------------------------------------------------------------------------
# Relational tools end to end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_tables_envelope(dispatcher):
    result = await _call(dispatcher, "list_tables")

    assert result["tool"] == "list_tables"
    assert result["ok"] is True
    assert result["error"] is None
    tables = [r["table_name"] for r in result["data"]["rows"]]
    assert tables.index("Customers") < tables.index("Orders")
    assert result["meta"]["row_count"] == 3
    assert result["meta"]["execution_ms"] >= 0


@pytest.mark.asyncio
async def test_execute_query_row_cap_and_truncation(dispatcher):
    result = await _call(
        dispatcher, "execute_query", query="SELECT id FROM dbo.Numbers ORDER BY id", max_rows=7
    )
    assert len(result["data"]["rows"]) == 7
    assert result["data"]["truncated"] is True


@pytest.mark.asyncio
async def test_execute_query_cap_above_ceiling_is_clamped(dispatcher):
    result = await _call(
        dispatcher, "execute_query", query="SELECT id FROM dbo.Numbers", max_rows=50_000
    )
    assert result["ok"] is True
    assert len(result["data"]["rows"]) == 25
    assert result["data"]["truncated"] is False


@pytest.mark.asyncio
async def test_execute_query_cap_below_one_is_clamped(dispatcher):
    result = await _call(
        dispatcher, "execute_query", query="SELECT id FROM dbo.Numbers", max_rows=0
    )
    assert len(result["data"]["rows"]) == 1
    assert result["data"]["truncated"] is True


@pytest.mark.asyncio
async def test_execute_query_normalizes_values(dispatcher):
    result = await _call(
        dispatcher,
        "execute_query",
        query=(
            "SELECT id, label, payload, NULL AS missing, 1.5 AS ratio "
            "FROM dbo.Numbers WHERE id = 3"
        ),
    )
    assert result["data"]["rows"] == [
        {
            "id": 3,
            "label": "n3",
            "payload": {"$bytes": {"length": 1, "base64": "Aw=="}},
            "missing": None,
            "ratio": 1.5,
        }
    ]


@pytest.mark.asyncio
async def test_execute_query_syntax_error(dispatcher):
    result = await _call(dispatcher, "execute_query", query="SELEC nothing")
    assert result["ok"] is False
    assert result["error"]["kind"] == "QuerySyntaxError"
    assert result["data"] is None
    assert result["meta"]["row_count"] == 0


@pytest.mark.asyncio
async def test_error_messages_are_redacted(relational_manager):
    dispatcher = ToolDispatcher(
        relational=relational_manager, error_mapper=ErrorMapper(["hunter2"])
    )
    result = await _call(dispatcher, "execute_query", query="SELECT * FROM hunter2")

    assert result["error"]["kind"] == "QuerySyntaxError"
    assert "hunter2" not in result["error"]["message"]
    assert "***" in result["error"]["message"]


@pytest.mark.asyncio
async def test_concurrent_calls_beyond_pool_size(make_relational_manager):
    manager = make_relational_manager(pool_size=2, acquire_timeout=10.0)
    dispatcher = ToolDispatcher(relational=manager)

    results = await asyncio.gather(
        *(
            _call(dispatcher, "execute_query", query=f"SELECT id FROM dbo.Numbers WHERE id = {i}")
            for i in range(1, 11)
        )
    )

    assert [r["data"]["rows"][0]["id"] for r in results] == list(range(1, 11))
    assert manager.status()["in_use"] == 0


@pytest.mark.asyncio
async def test_null_max_rows_means_default(dispatcher):
    assert ExecuteQueryArgs.model_validate({"query": "SELECT 1", "max_rows": None}).max_rows == 500
    assert (
        QueryItemsArgs.model_validate(
            {"query": "SELECT * FROM c", "container": "Items", "max_rows": None}
        ).max_rows
        == 500
    )

    sql = await _call(dispatcher, "execute_query", query="SELECT id FROM dbo.Numbers", max_rows=None)
    assert sql["ok"] is True
    assert len(sql["data"]["rows"]) == 25
    assert sql["data"]["truncated"] is False

    docs = await _call(
        dispatcher, "query_items", query="SELECT * FROM c", container="Items", max_rows=None
    )
    assert docs["ok"] is True
    assert len(docs["data"]["rows"]) == 5


@pytest.mark.asyncio
async def test_relational_deadline_answers_on_time(make_relational_manager):
    manager = make_relational_manager(pool_size=1)
    dispatcher = ToolDispatcher(relational=manager, query_timeout=0.2)

    t0 = time.perf_counter()
    result = await _call(dispatcher, "execute_query", query="SELECT pause(2.0) AS slept")
    elapsed = time.perf_counter() - t0

    assert result["ok"] is False
    assert result["error"]["kind"] == "ConnectionTimeout"
    assert elapsed < 1.5
    await dispatcher.drain()


@pytest.mark.asyncio
async def test_handle_failing_mid_query_is_replaced(make_relational_manager):
    manager = make_relational_manager(pool_size=1)
    dispatcher = ToolDispatcher(relational=manager, query_timeout=0.2)
    async with manager.lease() as handle:
        first = handle

    result = await _call(dispatcher, "execute_query", query="SELECT pause(1.0) AS slept")
    assert result["error"]["kind"] == "ConnectionTimeout"
    await dispatcher.drain()

    assert first.state is HandleState.CLOSED
    assert manager.status()["in_use"] == 0
    async with manager.lease() as fresh:
        assert fresh.id != first.id
        assert fresh.state is HandleState.READY

    ok = await _call(dispatcher, "execute_query", query="SELECT id FROM dbo.Numbers WHERE id = 1")
    assert ok["data"]["rows"] == [{"id": 1}]


# ---------------------------------------------------------------------------
# Document tools end to end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_query_items_cap_and_truncation(dispatcher):
    result = await _call(
        dispatcher, "query_items", query="SELECT * FROM c", container="Items", max_rows=2
    )
    assert result["ok"] is True
    assert len(result["data"]["rows"]) == 2
    assert result["data"]["truncated"] is True
    assert result["data"]["rows"][0]["tags"] == ["a", 1]


@pytest.mark.asyncio
async def test_list_containers_not_found(dispatcher):
    result = await _call(dispatcher, "list_containers", database="missing")
    assert result["error"]["kind"] == "NotFound"


@pytest.mark.asyncio
async def test_query_deadline_maps_to_timeout_and_degrades(make_cosmos_client):
    from datastore_mcp.backends.document import DocumentConnectionManager

    manager = DocumentConnectionManager(
        "https://fake.documents.azure.com:443/",
        "k",
        default_database="appdb",
        client_factory=lambda endpoint, key: make_cosmos_client(delay=1.0),
    )
    dispatcher = ToolDispatcher(document=manager, query_timeout=0.05)
    try:
        result = await _call(dispatcher, "query_items", query="SELECT * FROM c", container="Items")
        assert result["error"]["kind"] == "ConnectionTimeout"
        await dispatcher.drain()
        assert manager.state is HandleState.DEGRADED
    finally:
        await dispatcher.aclose()


@pytest.mark.asyncio
async def test_caller_cancellation_propagates(make_cosmos_client):
    from datastore_mcp.backends.document import DocumentConnectionManager

    manager = DocumentConnectionManager(
        "https://fake.documents.azure.com:443/",
        "k",
        default_database="appdb",
        client_factory=lambda endpoint, key: make_cosmos_client(delay=5.0),
    )
    dispatcher = ToolDispatcher(document=manager)
    try:
        task = asyncio.create_task(
            _call(dispatcher, "query_items", query="SELECT * FROM c", container="Items")
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await dispatcher.drain()
        assert manager.state is HandleState.DEGRADED
    finally:
        await dispatcher.aclose()


# ---------------------------------------------------------------------------
# build_dispatcher
# ---------------------------------------------------------------------------


def test_build_dispatcher_requires_a_backend():
    with pytest.raises(ConfigurationError):
        build_dispatcher(
            Settings(_env_file=None, mssql_connection_string=None, cosmos_endpoint=None)
        )


@pytest.mark.asyncio
async def test_build_dispatcher_cosmos_without_key():
    settings = Settings(
        _env_file=None,
        mssql_connection_string=None,
        cosmos_endpoint="https://acct.documents.azure.com:443/",
        cosmos_key=None,
    )
    dispatcher = build_dispatcher(settings)

    assert dispatcher.relational is None
    assert dispatcher.document is None
    result = await _call(dispatcher, "list_databases")
    assert result["error"]["kind"] == "BackendNotConfigured"
    assert "COSMOS_KEY" in result["error"]["message"]

    sql = await _call(dispatcher, "list_tables")
    assert sql["error"]["kind"] == "BackendNotConfigured"
    assert "MSSQL_CONNECTION_STRING" in sql["error"]["message"]


def test_build_dispatcher_relational_only():
    settings = Settings(
        _env_file=None,
        mssql_connection_string="Server=tcp:db.example.net,1433;Database=app;User ID=u;Password=pw",
        cosmos_endpoint=None,
        pool_size=3,
    )
    dispatcher = build_dispatcher(settings)

    assert dispatcher.relational is not None
    assert dispatcher.relational.pool_size == 3
    assert dispatcher.document is None
    assert dispatcher.status()["document"]["state"] == "NotConfigured"
    assert "pw" in dispatcher.error_mapper.secrets


@pytest.mark.asyncio
async def test_cosmos_tools_without_cosmos_settings(relational_manager):
    dispatcher = ToolDispatcher(
        relational=relational_manager,
        not_configured={BackendKind.DOCUMENT: "Cosmos DB is not configured"},
    )
    for name, arguments in [
        ("list_databases", {}),
        ("list_containers", {"database": "appdb"}),
        ("query_items", {"query": "SELECT * FROM c", "container": "Items"}),
    ]:
        result = await _call(dispatcher, name, **arguments)
        assert result["error"]["kind"] == "BackendNotConfigured"


def test_registry_covers_every_tool():
    assert set(TOOL_REGISTRY) == {
        "list_tables",
        "execute_query",
        "list_databases",
        "list_containers",
        "query_items",
    }
    assert {spec.backend for spec in TOOL_REGISTRY.values()} == set(BackendKind)
