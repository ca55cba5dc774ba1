"""Document-store connection manager – one shared Cosmos DB client handle.

The Cosmos client multiplexes HTTPS requests and keeps no per-call state, so
a single handle is handed to every concurrent caller.  The only lock guards
(re)building the client.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from azure.cosmos.aio import CosmosClient

from datastore_mcp.backends.base import (
    BackendHandle,
    BackendKind,
    HandleState,
    connect_with_retry,
    poisons_handle,
)
from datastore_mcp.errors import BackendConnectionError

if TYPE_CHECKING:
    from datastore_mcp.config import Settings

logger = logging.getLogger("backends.document")


def _default_client_factory(endpoint: str, key: str) -> Any:
    return CosmosClient(endpoint, credential=key)


class DocumentConnectionManager:
    """Owns the shared Cosmos client and its lifecycle.

    A connectivity failure reported through ``release`` marks the handle
    ``Degraded``; the next ``acquire`` builds a fresh client.  The old client
    is closed once its last in-flight caller has released it.
    """

    kind = BackendKind.DOCUMENT

    def __init__(
        self,
        endpoint: str,
        key: str,
        *,
        default_database: str | None = None,
        connect_attempts: int = 3,
        backoff_seconds: float = 0.2,
        client_factory: Callable[[str, str], Any] = _default_client_factory,
    ) -> None:
        self.endpoint = endpoint
        self.default_database = default_database
        self.connect_attempts = connect_attempts
        self.backoff_seconds = backoff_seconds
        self.state = HandleState.UNINITIALIZED

        self._key = key
        self._client_factory = client_factory
        self._handle: BackendHandle | None = None
        self._active: Counter[int] = Counter()
        self._retired: dict[int, BackendHandle] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> DocumentConnectionManager:
        return cls(
            settings.cosmos_endpoint,
            settings.cosmos_key.get_secret_value(),
            default_database=settings.cosmos_default_database,
            connect_attempts=settings.connect_attempts,
            backoff_seconds=settings.connect_backoff_seconds,
        )

    async def _create_client(self) -> Any:
        return self._client_factory(self.endpoint, self._key)

    async def _open(self) -> BackendHandle:
        handle = BackendHandle(kind=self.kind)
        handle.transition(HandleState.CONNECTING)
        if self.state is HandleState.UNINITIALIZED:
            self.state = HandleState.CONNECTING
        try:
            handle.resource = await connect_with_retry(
                self._create_client,
                attempts=self.connect_attempts,
                backoff_seconds=self.backoff_seconds,
                label="document",
            )
        except BaseException:
            handle.transition(HandleState.DEGRADED)
            handle.transition(HandleState.CLOSED)
            self.state = HandleState.DEGRADED
            raise
        handle.transition(HandleState.READY)
        self.state = HandleState.READY
        logger.info("Created Cosmos DB client #%d for %s", handle.id, self.endpoint)
        return handle

    async def _close_client(self, handle: BackendHandle) -> None:
        client, handle.resource = handle.resource, None
        if client is not None:
            try:
                await client.close()
            except Exception as exc:
                logger.debug("Error closing Cosmos DB client #%d: %s", handle.id, exc)
        handle.transition(HandleState.CLOSED)

    async def _retire(self, handle: BackendHandle) -> None:
        if self._active[handle.id]:
            self._retired[handle.id] = handle
        else:
            await self._close_client(handle)

    async def acquire(self) -> BackendHandle:
        """Return the shared client handle, (re)building it when needed."""
        if self._closed:
            raise BackendConnectionError("The document connection manager is closed")
        handle = self._handle
        if handle is None or not handle.usable:
            async with self._lock:
                if self._handle is None or not self._handle.usable:
                    previous = self._handle
                    self._handle = None
                    if previous is not None:
                        await self._retire(previous)
                    self._handle = await self._open()
                handle = self._handle
        self._active[handle.id] += 1
        return handle

    async def release(self, handle: BackendHandle, *, failed: BaseException | None = None) -> None:
        """Record the end of one call; connectivity failures degrade the handle."""
        self._active[handle.id] -= 1
        if self._active[handle.id] <= 0:
            del self._active[handle.id]

        if handle.usable and failed is not None and poisons_handle(failed):
            handle.transition(HandleState.DEGRADED)
            self.state = HandleState.DEGRADED
            logger.warning(
                "Cosmos DB client #%d degraded after %s; it will be rebuilt",
                handle.id,
                failed.__class__.__name__,
            )

        if handle.id in self._retired and not self._active[handle.id]:
            await self._close_client(self._retired.pop(handle.id))

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BackendHandle]:
        handle = await self.acquire()
        try:
            yield handle
        except BaseException as exc:
            await self.release(handle, failed=exc)
            raise
        await self.release(handle)

    async def aclose(self) -> None:
        """Close the shared client; later acquires fail."""
        self._closed = True
        handles = list(self._retired.values())
        self._retired.clear()
        if self._handle is not None:
            handles.append(self._handle)
            self._handle = None
        for handle in handles:
            if handle.state is not HandleState.CLOSED:
                await self._close_client(handle)
        self.state = HandleState.CLOSED
        logger.info("Document connection manager closed")

    def status(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "in_use": sum(self._active.values()),
            "default_database": self.default_database,
        }
