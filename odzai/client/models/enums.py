"""Shared enumerations used across the client core."""

from __future__ import annotations

from enum import StrEnum

# -- Storage -----------------------------------------------------------------


class StorageTier(StrEnum):
    """Persistence scope of a stored value."""

    DURABLE = "local"
    SESSION = "session"


# -- Workspace ---------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    """Lifecycle of the workspace session."""

    UNINITIALIZED = "uninitialized"
    RESOLVING = "resolving"
    LOADED = "loaded"
    UNLOADED = "unloaded"
