"""Data models for the client core."""

from odzai.client.models.entities import (
    Account,
    Category,
    Entity,
    Transaction,
    build_entity,
    known_fields,
    merge_entity,
)
from odzai.client.models.enums import StorageTier, WorkspaceStatus
from odzai.client.models.workspace import (
    DEFAULT_WORKSPACE_COLOR,
    UserPreferences,
    Workspace,
    WorkspaceRecord,
)

__all__ = [
    "DEFAULT_WORKSPACE_COLOR",
    # Entities
    "Account",
    "Category",
    "Entity",
    # Enums
    "StorageTier",
    "Transaction",
    # Workspace
    "UserPreferences",
    "Workspace",
    "WorkspaceRecord",
    "WorkspaceStatus",
    "build_entity",
    "known_fields",
    "merge_entity",
]
