"""Error taxonomy and the mapper that turns backend failures into tool errors.

Every failure that reaches a tool caller is exactly one ``ErrorKind``.  Backend
exceptions (SQLAlchemy / DBAPI, Azure SDK, socket errors) are classified here
and never cross the tool boundary as raw objects.  Messages are scrubbed of
configured secrets before they are returned.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable

from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.cosmos.exceptions import CosmosHttpResponseError
from sqlalchemy import exc as sa_exc

from datastore_mcp.schemas.common import ErrorDetail, ErrorKind

logger = logging.getLogger("errors")

REDACTED = "***"
MAX_MESSAGE_LENGTH = 1000


# Kinds after which a backend handle can no longer be trusted.
CONNECTIVITY_KINDS = frozenset({ErrorKind.CONNECTION_ERROR, ErrorKind.CONNECTION_TIMEOUT})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolError(Exception):
    """Base class for classified failures raised inside the core."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class UnknownToolError(ToolError):
    kind = ErrorKind.UNKNOWN_TOOL


class InvalidArgumentsError(ToolError):
    kind = ErrorKind.INVALID_ARGUMENTS


class BackendNotConfiguredError(ToolError):
    kind = ErrorKind.BACKEND_NOT_CONFIGURED


class BackendConnectionError(ToolError):
    kind = ErrorKind.CONNECTION_ERROR


class ConnectionTimeoutError(ToolError):
    kind = ErrorKind.CONNECTION_TIMEOUT


class AuthError(ToolError):
    kind = ErrorKind.AUTH_ERROR


class QuerySyntaxError(ToolError):
    kind = ErrorKind.QUERY_SYNTAX_ERROR


class NotFoundError(ToolError):
    kind = ErrorKind.NOT_FOUND


class LimitExceededError(ToolError):
    kind = ErrorKind.LIMIT_EXCEEDED


class InternalError(ToolError):
    kind = ErrorKind.INTERNAL_ERROR


class ConfigurationError(Exception):
    """Raised at startup when no backend is configured.  Fatal to the process."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_SQLSTATE_RE = re.compile(r"^[0-9A-Z]{5}$")

_AUTH_MARKERS = (
    "login failed",
    "authentication failed",
    "password authentication",
    "access denied",
)
_SYNTAX_MARKERS = (
    "syntax error",
    "incorrect syntax",
    "no such table",
    "no such column",
    "invalid object name",
    "invalid column name",
    "does not exist",
    "could not find stored procedure",
)


def _sqlstate(orig: BaseException | None) -> str | None:
    """Best-effort SQLSTATE from a DBAPI exception (pyodbc puts it in args[0])."""
    if orig is None:
        return None
    state = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if state:
        return str(state)
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], str) and _SQLSTATE_RE.match(args[0]):
        return args[0]
    return None


def _classify_dbapi(exc: sa_exc.DBAPIError) -> ErrorKind:
    if exc.connection_invalidated:
        return ErrorKind.CONNECTION_ERROR

    text = str(exc.orig).lower()
    state = _sqlstate(exc.orig) or ""

    if state.startswith("28") or any(m in text for m in _AUTH_MARKERS) or "18456" in text:
        return ErrorKind.AUTH_ERROR
    if state.startswith("HYT"):
        return ErrorKind.CONNECTION_TIMEOUT
    if state.startswith("08"):
        return ErrorKind.CONNECTION_ERROR
    if (
        isinstance(exc, sa_exc.ProgrammingError)
        or state.startswith("42")
        or any(m in text for m in _SYNTAX_MARKERS)
    ):
        return ErrorKind.QUERY_SYNTAX_ERROR
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError)):
        return ErrorKind.CONNECTION_ERROR
    return ErrorKind.INTERNAL_ERROR


def _classify_cosmos(exc: CosmosHttpResponseError) -> ErrorKind:
    status = exc.status_code
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 400:
        return ErrorKind.QUERY_SYNTAX_ERROR
    if status in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status == 408:
        return ErrorKind.CONNECTION_TIMEOUT
    if status is None or status == 429 or status >= 500:
        return ErrorKind.CONNECTION_ERROR
    return ErrorKind.INTERNAL_ERROR


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception to exactly one ``ErrorKind``."""
    if isinstance(exc, ToolError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, sa_exc.TimeoutError)):
        return ErrorKind.CONNECTION_TIMEOUT
    if isinstance(exc, CosmosHttpResponseError):
        return _classify_cosmos(exc)
    if isinstance(exc, ClientAuthenticationError):
        return ErrorKind.AUTH_ERROR
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return ErrorKind.CONNECTION_ERROR
    if isinstance(exc, sa_exc.DBAPIError):
        return _classify_dbapi(exc)
    if isinstance(exc, OSError):
        return ErrorKind.CONNECTION_ERROR
    return ErrorKind.INTERNAL_ERROR


def describe_exception(exc: BaseException) -> str:
    """Short backend message without SQL echo or request dumps."""
    if isinstance(exc, ToolError):
        return exc.message
    if isinstance(exc, sa_exc.DBAPIError):
        return str(exc.orig)
    if isinstance(exc, CosmosHttpResponseError):
        # .message carries a "Status code: N" prefix line; the service text follows.
        message = getattr(exc, "http_error_message", None) or exc.message or ""
        lines = [line for line in str(message).splitlines() if line.strip()]
        return lines[0] if lines else f"HTTP {exc.status_code}"
    return str(exc) or exc.__class__.__name__


_GENERIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.CONNECTION_ERROR: "The backend could not be reached",
    ErrorKind.CONNECTION_TIMEOUT: "The backend did not respond in time",
    ErrorKind.AUTH_ERROR: "The backend rejected the configured credentials",
    ErrorKind.NOT_FOUND: "The requested resource was not found",
    ErrorKind.QUERY_SYNTAX_ERROR: "The backend rejected the query",
    ErrorKind.INTERNAL_ERROR: "An internal error occurred while running the tool",
}


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class ErrorMapper:
    """Render exceptions as ``ErrorDetail`` payloads with secrets removed.

    Attributes:
        secrets: Configured credential strings, longest first so that a
            connection string is replaced before the password inside it.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        return text

    def to_detail(self, exc: BaseException, *, tool: str | None = None) -> ErrorDetail:
        """Classify *exc* and build the outward error payload."""
        kind = classify(exc)

        if kind is ErrorKind.INTERNAL_ERROR and not isinstance(exc, ToolError):
            # Unclassified: keep the detail in the log only.
            logger.error(
                "Unclassified failure in tool=%s: %s",
                tool,
                self.redact(f"{exc.__class__.__name__}: {describe_exception(exc)}"),
            )
            return ErrorDetail(kind=kind, message=_GENERIC_MESSAGES[kind])

        message = self.redact(describe_exception(exc)).strip()
        if not message:
            message = _GENERIC_MESSAGES.get(kind, kind.value)
        if len(message) > MAX_MESSAGE_LENGTH:
            message = message[: MAX_MESSAGE_LENGTH - 3] + "..."
        hint = self.redact(exc.hint) if isinstance(exc, ToolError) and exc.hint else None
        return ErrorDetail(kind=kind, message=message, hint=hint)
