"""Backend connection managers."""

from datastore_mcp.backends.base import BackendHandle, BackendKind, HandleState
from datastore_mcp.backends.document import DocumentConnectionManager
from datastore_mcp.backends.relational import RelationalConnectionManager

__all__ = [
    "BackendHandle",
    "BackendKind",
    "DocumentConnectionManager",
    "HandleState",
    "RelationalConnectionManager",
]
