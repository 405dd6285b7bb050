"""Workspace data model.

A workspace is a budget: the tenant boundary a user loads to see financial
data scoped to it.  The canonical ``name`` comes from the server; the
user-facing ``display_name`` is resolved client-side.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

DEFAULT_WORKSPACE_COLOR = "#3B82F6"


class WorkspaceRecord(BaseModel):
    """Workspace metadata as returned by the primary API."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str
    display_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "display_name"),
    )
    color: str | None = None


class Workspace(BaseModel):
    """A workspace with its display name resolved."""

    id: str
    name: str
    display_name: str
    color: str = DEFAULT_WORKSPACE_COLOR
    original_name: str
    """Canonical name as reported by the server when the workspace was resolved."""


class UserPreferences(BaseModel):
    """User preference document (``/api/user/preferences``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    default_workspace_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("defaultWorkspaceId", "default_workspace_id"),
    )
