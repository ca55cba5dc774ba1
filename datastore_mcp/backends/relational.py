"""Relational connection manager – handle lifecycle over SQLAlchemy's async connection pool.

Each pooled connection is exclusively held by one request at a time.  The
engine's ``AsyncAdaptedQueuePool`` does the pooling; this manager tracks
handle state and discards connections whose state is unknown after a failure.
"""

from __future__ import annotations

import logging
import weakref
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from datastore_mcp.backends.base import (
    BackendHandle,
    BackendKind,
    HandleState,
    connect_with_retry,
    poisons_handle,
)
from datastore_mcp.errors import BackendConnectionError, ConnectionTimeoutError

if TYPE_CHECKING:
    from datastore_mcp.config import Settings

logger = logging.getLogger("backends.relational")

_HANDLE_KEY = "datastore_mcp.handle"

# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------

_ADO_TO_ODBC: dict[str, str] = {
    "server": "Server",
    "data source": "Server",
    "address": "Server",
    "addr": "Server",
    "network address": "Server",
    "database": "Database",
    "initial catalog": "Database",
    "user id": "UID",
    "uid": "UID",
    "user": "UID",
    "password": "PWD",
    "pwd": "PWD",
    "encrypt": "Encrypt",
    "trustservercertificate": "TrustServerCertificate",
    "trust server certificate": "TrustServerCertificate",
    "multisubnetfailover": "MultiSubnetFailover",
    "applicationintent": "ApplicationIntent",
    "application intent": "ApplicationIntent",
    "application name": "APP",
    "authentication": "Authentication",
}
_ODBC_BOOLEAN_KEYS = {"Encrypt", "TrustServerCertificate", "MultiSubnetFailover"}


def is_sqlalchemy_url(conn_str: str) -> bool:
    return "://" in conn_str


def parse_ado_connection_string(conn_str: str) -> dict[str, str]:
    """Split an ADO.NET ``key=value;...`` string into lowercase keys.

    Values may be wrapped in single or double quotes to carry ``;``.
    """
    pairs: dict[str, str] = {}
    segments: list[str] = []
    buf: list[str] = []
    quote: str | None = None
    for ch in conn_str:
        if quote:
            if ch == quote:
                quote = None
            buf.append(ch)
        elif ch in "\"'" and buf and "".join(buf).rstrip().endswith("="):
            quote = ch
            buf.append(ch)
        elif ch == ";":
            segments.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    segments.append("".join(buf))

    for segment in segments:
        if not segment.strip():
            continue
        if "=" not in segment:
            raise ValueError("Malformed connection string segment (expected key=value)")
        key, value = segment.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        pairs[key.strip().lower()] = value
    return pairs


def _odbc_escape(value: str) -> str:
    if any(c in value for c in ";{}") or value != value.strip():
        return "{" + value.replace("}", "}}") + "}"
    return value


def ado_to_odbc(conn_str: str, driver: str) -> str:
    """Translate an ADO.NET connection string into an ODBC one for *driver*."""
    parts = [f"Driver={{{driver}}}"]
    for key, value in parse_ado_connection_string(conn_str).items():
        odbc_key = _ADO_TO_ODBC.get(key)
        if odbc_key is None:
            logger.debug("Ignoring unsupported connection-string keyword %r", key)
            continue
        if odbc_key in _ODBC_BOOLEAN_KEYS and value.lower() in ("true", "false"):
            value = "yes" if value.lower() == "true" else "no"
        parts.append(f"{odbc_key}={_odbc_escape(value)}")
    return ";".join(parts)


def build_engine_url(conn_str: str, odbc_driver: str) -> str | URL:
    """SQLAlchemy URLs pass through; ADO.NET strings go to ``mssql+aioodbc``."""
    if is_sqlalchemy_url(conn_str):
        return conn_str
    return URL.create("mssql+aioodbc", query={"odbc_connect": ado_to_odbc(conn_str, odbc_driver)})


def connection_string_secrets(conn_str: str) -> list[str]:
    """The connection string plus any password embedded in it."""
    secrets = [conn_str]
    try:
        if is_sqlalchemy_url(conn_str):
            password = make_url(conn_str).password
        else:
            params = parse_ado_connection_string(conn_str)
            password = params.get("password") or params.get("pwd")
    except (ArgumentError, ValueError):
        password = None
    if password:
        secrets.append(str(password))
    return secrets


def _default_engine_factory(url: str | URL, **pool_options: Any) -> AsyncEngine:
    return create_async_engine(url, poolclass=AsyncAdaptedQueuePool, **pool_options)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RelationalConnectionManager:
    """Bounded pool of exclusively-held relational connections.

    Pooling is SQLAlchemy's ``AsyncAdaptedQueuePool`` sized to exactly
    ``pool_size`` with no overflow: callers beyond it queue in FIFO order and
    fail with ``ConnectionTimeoutError`` after ``acquire_timeout`` seconds.
    Checkouts are pre-pinged.  Every pooled DBAPI connection carries one
    ``BackendHandle`` in its ``info`` dict.  A handle whose last use hit a
    connectivity failure, a timeout or cancellation is invalidated instead of
    returned, so its slot reconnects on the next checkout.

    Usage:
        async with manager.lease() as handle:
            rows = await relational_service.execute_query(handle.resource, spec)
    """

    kind = BackendKind.RELATIONAL

    def __init__(
        self,
        url: str | URL,
        *,
        pool_size: int = 5,
        acquire_timeout: float = 5.0,
        connect_attempts: int = 3,
        backoff_seconds: float = 0.2,
        pre_ping: bool = True,
        engine_factory: Callable[..., AsyncEngine] = _default_engine_factory,
    ) -> None:
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.pool_size = pool_size
        self.acquire_timeout = acquire_timeout
        self.connect_attempts = connect_attempts
        self.backoff_seconds = backoff_seconds
        self.pre_ping = pre_ping
        self.state = HandleState.UNINITIALIZED

        self._url = url
        self._engine_factory = engine_factory
        self._engine: AsyncEngine | None = None
        self._handles: weakref.WeakSet[BackendHandle] = weakref.WeakSet()
        self._waiting = 0
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> RelationalConnectionManager:
        conn_str = settings.mssql_connection_string.get_secret_value()
        return cls(
            build_engine_url(conn_str, settings.mssql_odbc_driver),
            pool_size=settings.pool_size,
            acquire_timeout=settings.acquire_timeout_seconds,
            connect_attempts=settings.connect_attempts,
            backoff_seconds=settings.connect_backoff_seconds,
        )

    # ── Engine ───────────────────────────────────────────────────────────

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._engine_factory(
                self._url,
                pool_size=self.pool_size,
                max_overflow=0,
                pool_timeout=self.acquire_timeout,
                pool_pre_ping=self.pre_ping,
            )
        return self._engine

    async def _checkout(self) -> AsyncConnection:
        try:
            return await self._get_engine().connect()
        except PoolTimeoutError as exc:
            raise ConnectionTimeoutError(
                f"No relational connection became available within "
                f"{self.acquire_timeout:g}s (pool size {self.pool_size})",
                hint="Retry shortly; other queries are holding every pooled connection.",
            ) from exc

    def _handle_for(self, conn: AsyncConnection) -> BackendHandle:
        handle = conn.info.get(_HANDLE_KEY)
        if handle is None or not handle.usable:
            # The pool opened (or reopened) this DBAPI connection.
            handle = BackendHandle(kind=self.kind)
            handle.transition(HandleState.CONNECTING)
            handle.transition(HandleState.READY)
            conn.info[_HANDLE_KEY] = handle
            self._handles.add(handle)
            logger.info(
                "Opened relational connection #%d (pool size %d)", handle.id, self.pool_size
            )
        handle.resource = conn
        return handle

    async def _discard(self, handle: BackendHandle, conn: AsyncConnection) -> None:
        # invalidate() closes the DBAPI connection and hands the slot back to the pool.
        try:
            await conn.invalidate()
            await conn.close()
        except Exception as exc:
            logger.debug("Error discarding relational connection #%d: %s", handle.id, exc)
        handle.transition(HandleState.CLOSED)

    # ── Public API ───────────────────────────────────────────────────────

    async def acquire(self) -> BackendHandle:
        """Check out a Ready handle, waiting in line when the pool is exhausted."""
        if self._closed:
            raise BackendConnectionError("The relational connection manager is closed")
        if self.state is HandleState.UNINITIALIZED:
            self.state = HandleState.CONNECTING

        self._waiting += 1
        try:
            conn = await connect_with_retry(
                self._checkout,
                attempts=self.connect_attempts,
                backoff_seconds=self.backoff_seconds,
                label="relational",
            )
        except ConnectionTimeoutError:
            raise
        except Exception:
            self.state = HandleState.DEGRADED
            raise
        finally:
            self._waiting -= 1

        if self._closed:
            await conn.close()
            raise BackendConnectionError("The relational connection manager is closed")
        self.state = HandleState.READY
        return self._handle_for(conn)

    async def release(self, handle: BackendHandle, *, failed: BaseException | None = None) -> None:
        """Return *handle* to the pool, or discard it if it cannot be trusted."""
        conn, handle.resource = handle.resource, None
        poisoned = failed is not None and poisons_handle(failed)
        if handle.usable and (poisoned or (conn is not None and conn.invalidated)):
            handle.transition(HandleState.DEGRADED)
            self.state = HandleState.DEGRADED
            logger.warning(
                "Discarding relational connection #%d after %s",
                handle.id,
                failed.__class__.__name__ if failed is not None else "invalidation",
            )
        if conn is None:
            return
        if not handle.usable or self._closed:
            await self._discard(handle, conn)
            return
        try:
            # Rolls back and checks the connection back in.
            await conn.close()
        except Exception as exc:
            logger.warning(
                "Returning relational connection #%d failed (%s); discarding it",
                handle.id,
                exc.__class__.__name__,
            )
            handle.transition(HandleState.DEGRADED)
            await self._discard(handle, conn)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BackendHandle]:
        """Acquire a handle for the duration of the block."""
        handle = await self.acquire()
        try:
            yield handle
        except BaseException as exc:
            await self.release(handle, failed=exc)
            raise
        await self.release(handle)

    async def aclose(self) -> None:
        """Close every pooled connection and refuse further acquires."""
        self._closed = True
        if self._engine is not None:
            await self._engine.dispose()
        for handle in list(self._handles):
            handle.transition(HandleState.CLOSED)
        self.state = HandleState.CLOSED
        logger.info("Relational connection manager closed")

    def status(self) -> dict[str, object]:
        pool = self._engine.sync_engine.pool if self._engine is not None else None
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "pool_size": self.pool_size,
            "in_use": pool.checkedout() if pool is not None else 0,
            "idle": pool.checkedin() if pool is not None else 0,
            "waiting": self._waiting,
        }
