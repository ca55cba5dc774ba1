"""Backend handle lifecycle shared by both connection managers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from datastore_mcp.errors import (
    CONNECTIVITY_KINDS,
    BackendConnectionError,
    ErrorKind,
    ToolError,
    classify,
    describe_exception,
)

logger = logging.getLogger("backends")

T = TypeVar("T")

_handle_ids = itertools.count(1)


class BackendKind(str, Enum):
    RELATIONAL = "relational"
    DOCUMENT = "document"


class HandleState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    CONNECTING = "Connecting"
    READY = "Ready"
    DEGRADED = "Degraded"
    CLOSED = "Closed"


# Allowed lifecycle transitions.
_TRANSITIONS: dict[HandleState, frozenset[HandleState]] = {
    HandleState.UNINITIALIZED: frozenset({HandleState.CONNECTING, HandleState.CLOSED}),
    HandleState.CONNECTING: frozenset({HandleState.READY, HandleState.DEGRADED}),
    HandleState.READY: frozenset({HandleState.DEGRADED, HandleState.CLOSED}),
    HandleState.DEGRADED: frozenset({HandleState.CONNECTING, HandleState.CLOSED}),
    HandleState.CLOSED: frozenset(),
}


@dataclass(eq=False)
class BackendHandle:
    """Opaque, kind-tagged handle to an established connection or client.

    ``resource`` is the live backend object (an ``AsyncConnection`` or a
    Cosmos client); callers treat it as opaque outside the executors.
    """

    kind: BackendKind
    id: int = field(default_factory=lambda: next(_handle_ids))
    state: HandleState = HandleState.UNINITIALIZED
    resource: Any = field(default=None, repr=False)

    def transition(self, new_state: HandleState) -> None:
        if new_state is self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal {self.kind.value} handle transition "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug(
            "%s handle #%d %s -> %s", self.kind.value, self.id, self.state.value, new_state.value
        )
        self.state = new_state

    @property
    def usable(self) -> bool:
        return self.state is HandleState.READY


def poisons_handle(exc: BaseException) -> bool:
    """Whether a failure leaves the handle in an unknown state.

    Connectivity failures, timeouts and cancellation all qualify; query and
    lookup errors leave the connection usable.
    """
    if isinstance(exc, asyncio.CancelledError):
        return True
    if not isinstance(exc, Exception):
        return True
    return classify(exc) in CONNECTIVITY_KINDS


def is_retryable(exc: BaseException) -> bool:
    """Credential rejections and failures already raised as ``ToolError`` are final."""
    return not isinstance(exc, ToolError) and classify(exc) is not ErrorKind.AUTH_ERROR


async def connect_with_retry(
    open_fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_seconds: float,
    label: str,
) -> T:
    """Call *open_fn* up to *attempts* times with exponential backoff.

    Non-retryable failures are re-raised at once; any other failure that
    survives every attempt surfaces as ``BackendConnectionError``.
    """

    def _log_retry(state: RetryCallState) -> None:
        logger.warning(
            "%s connect attempt %d/%d failed (%s); retrying in %.2fs",
            label,
            state.attempt_number,
            attempts,
            classify(state.outcome.exception()).value,
            state.next_action.sleep if state.next_action else 0.0,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff_seconds),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return await retrying(open_fn)
    except Exception as exc:
        if not is_retryable(exc):
            raise
        logger.warning(
            "%s connect failed after %d attempts (%s); giving up",
            label,
            attempts,
            classify(exc).value,
        )
        raise BackendConnectionError(
            f"Could not connect to the {label} backend after {attempts} attempts: "
            f"{describe_exception(exc)}"
        ) from exc
