"""Bounded page collection shared by both executors (no backend access)."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, TypeVar

from datastore_mcp.errors import ConnectionTimeoutError
from datastore_mcp.schemas.query import BoundedRows, ResultPage

logger = logging.getLogger("services.paging")

T = TypeVar("T")


async def collect_bounded(pages: AsyncIterator[ResultPage], row_cap: int) -> BoundedRows:
    """Drain *pages* until ``row_cap + 1`` rows are held or the source ends.

    The extra row only proves that more data exists; it is never returned.
    The page source is closed as soon as the loop stops, so cursors and
    pagers are released without reading further.

    Returns:
        At most ``row_cap`` rows in arrival order, ``truncated`` set when the
        source had at least one more row.
    """
    rows: list[dict] = []
    try:
        async for page in pages:
            rows.extend(page.rows)
            if len(rows) > row_cap or page.exhausted:
                break
    finally:
        aclose = getattr(pages, "aclose", None)
        if aclose is not None:
            await aclose()

    return BoundedRows(rows=rows[:row_cap], truncated=len(rows) > row_cap)


def _reap(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned call ended with %s", task.exception().__class__.__name__)


def _abandon(task: asyncio.Task, background: set[asyncio.Task] | None) -> None:
    task.cancel()
    task.add_done_callback(_reap)
    if background is not None:
        background.add(task)
        task.add_done_callback(background.discard)


async def run_with_deadline(
    aw: Awaitable[T],
    seconds: float,
    *,
    background: set[asyncio.Task] | None = None,
) -> T:
    """Await *aw*, giving up once *seconds* have passed.

    On expiry, or when the caller is cancelled, the work is cancelled but
    not awaited: its cleanup (closing the cursor, discarding the connection)
    can block on a busy driver, so it finishes in the background and the
    caller is answered on time.  Abandoned tasks are added to *background*
    until they end.
    """
    task = asyncio.ensure_future(aw)
    try:
        done, _ = await asyncio.wait({task}, timeout=seconds)
    except asyncio.CancelledError:
        _abandon(task, background)
        raise
    if task in done:
        return task.result()

    _abandon(task, background)
    raise ConnectionTimeoutError(
        f"Query did not complete within {seconds:g}s and was cancelled",
        hint="Narrow the query or lower max_rows.",
    )
