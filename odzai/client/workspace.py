"""Workspace session: which budget is currently loaded.

State machine::

    UNINITIALIZED -> RESOLVING -> LOADED | UNLOADED

``LOADED`` is reached from ``UNLOADED`` by ``load_workspace``; a failed load
always falls back to ``UNLOADED`` and clears the persisted selection, so the
session never reports a workspace id it has no metadata for.

Startup resolution (``initialize``), first match wins:

1. ``force_logout`` clears the persisted selection.
2. ``force_default`` loads the server-declared default and stops.
3. A persisted selection is loaded; the server default is not consulted.
4. The server-declared default is loaded and persisted.
5. Otherwise the session stays ``UNLOADED`` and the user has to pick one.

The "current" workspace and the user's "default" workspace are separate
preferences: setting a default never changes what is loaded.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger
from pydantic import TypeAdapter

from odzai.client.errors import ApiError, WorkspaceNotFoundError, get_error_message
from odzai.client.models.enums import WorkspaceStatus
from odzai.client.models.workspace import (
    DEFAULT_WORKSPACE_COLOR,
    UserPreferences,
    Workspace,
    WorkspaceRecord,
)
from odzai.client.notify import LogNotifier

if TYPE_CHECKING:
    from odzai.client.http import ApiClient
    from odzai.client.notify import Notifier
    from odzai.client.storage.facade import Storage

CURRENT_WORKSPACE_KEY = "odzai-current-workspace"
DISPLAY_NAME_KEY = "workspace-display-{}"

WORKSPACES_ENDPOINT = "/api/budgets"
PREFERENCES_ENDPOINT = "/api/user/preferences"
ACTIVATION_PATH = "/api/budgets/load"

_records = TypeAdapter(list[WorkspaceRecord])

Navigate = Callable[[str], Awaitable[Any] | None]


def derive_display_name(name: str) -> str:
    """``"acme-budget"`` -> ``"Acme"``: the part before the first dash, capitalized."""
    head = name.split("-", 1)[0]
    return head[:1].upper() + head[1:]


class WorkspaceSession:
    """Resolves, loads and switches the current workspace."""

    def __init__(
        self,
        api: ApiClient,
        storage: Storage,
        *,
        engine_url: str,
        notifier: Notifier | None = None,
        navigate: Navigate | None = None,
        notification_delay: float = 0.3,
    ) -> None:
        self._api = api
        self._storage = storage
        self._engine_url = engine_url.rstrip("/")
        self._notifier: Notifier = notifier or LogNotifier()
        self._navigate = navigate
        self._notification_delay = notification_delay
        self._pending_notifications: set[asyncio.TimerHandle] = set()

        self.status = WorkspaceStatus.UNINITIALIZED
        self.current_workspace: Workspace | None = None
        self.current_workspace_id: str | None = None
        self.default_workspace_id: str | None = None
        self.loading_workspace = False
        self.last_error: Exception | None = None

    @property
    def is_workspace_loaded(self) -> bool:
        return self.status == WorkspaceStatus.LOADED

    # -- Startup ---------------------------------------------------------------

    async def initialize(self, *, force_logout: bool = False, force_default: bool = False) -> Workspace | None:
        """Resolve the workspace to load at startup.  Returns it, or ``None``."""
        logger.info("Initializing workspace session")
        self.status = WorkspaceStatus.RESOLVING

        if force_logout:
            logger.info("Force logout requested, clearing persisted workspace")
            self._storage.remove(CURRENT_WORKSPACE_KEY)

        if force_default:
            default_id = await self.fetch_default_workspace()
            if default_id:
                logger.info("Loading forced default workspace {}", default_id)
                if await self._load_workspace_data(default_id):
                    self._storage.set(CURRENT_WORKSPACE_KEY, default_id)
                return self.current_workspace

        stored_id = (self._storage.get_raw(CURRENT_WORKSPACE_KEY) or "").strip()
        if stored_id:
            logger.info("Loading persisted workspace {}", stored_id)
            await self._load_workspace_data(stored_id)
            return self.current_workspace

        default_id = await self.fetch_default_workspace()
        if default_id:
            logger.info("Loading default workspace {}", default_id)
            if await self._load_workspace_data(default_id):
                self._storage.set(CURRENT_WORKSPACE_KEY, default_id)
            return self.current_workspace

        logger.info("No workspace to load, user needs to select one")
        self.status = WorkspaceStatus.UNLOADED
        return None

    # -- Loading ---------------------------------------------------------------

    async def load_workspace(self, workspace_id: str) -> bool:
        """Switch to *workspace_id*, then navigate home.  Returns ``True`` on success."""
        # Persist first so a restart mid-load resumes at the same target.
        self._storage.set(CURRENT_WORKSPACE_KEY, workspace_id)
        self._storage.flush()

        self.loading_workspace = True
        self._notifier.info("Loading workspace...")
        try:
            loaded = await self._load_workspace_data(workspace_id)
        finally:
            self.loading_workspace = False

        if loaded:
            self._notifier.success("Workspace loaded successfully")
            await self._go("/")
        return loaded

    async def refresh_current_workspace(self) -> bool:
        """Re-read metadata of the loaded workspace without navigating."""
        if self.current_workspace_id is None:
            return False
        try:
            record = await self._fetch_workspace_record(self.current_workspace_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error refreshing workspace {}: {}", self.current_workspace_id, get_error_message(exc))
            return False
        self.current_workspace = self._resolve(record)
        return True

    async def list_workspaces(self) -> list[Workspace]:
        """All workspaces visible to the user, with display names resolved."""
        raw = await self._api.fetcher(WORKSPACES_ENDPOINT)
        return [self._resolve(record) for record in _records.validate_python(raw)]

    async def _load_workspace_data(self, workspace_id: str) -> bool:
        try:
            record = await self._fetch_workspace_record(workspace_id)
            await self._activate_on_engine(workspace_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error loading workspace {}: {}", workspace_id, get_error_message(exc))
            self._notifier.error("Failed to load workspace data", get_error_message(exc))
            self._storage.remove(CURRENT_WORKSPACE_KEY)
            self._reset()
            self.last_error = exc
            return False

        self.current_workspace = self._resolve(record)
        self.current_workspace_id = workspace_id
        self.status = WorkspaceStatus.LOADED
        self.last_error = None
        logger.info("Workspace loaded: {} ({})", workspace_id, self.current_workspace.display_name)
        return True

    async def _fetch_workspace_record(self, workspace_id: str) -> WorkspaceRecord:
        """Look the workspace up directly, then in the list endpoint."""
        try:
            raw = await self._api.fetch_with_error_handling(f"{WORKSPACES_ENDPOINT}/{workspace_id}")
        except ApiError as exc:
            logger.warning("Workspace lookup for {} failed ({}), searching the list", workspace_id, exc.status)
        else:
            return WorkspaceRecord.model_validate(raw)

        listing = await self._api.fetch_with_error_handling(WORKSPACES_ENDPOINT)
        for record in _records.validate_python(listing):
            if record.id == workspace_id:
                return record
        raise WorkspaceNotFoundError(workspace_id)

    async def _activate_on_engine(self, workspace_id: str) -> None:
        """Tell the budget engine which workspace is active.  Best effort."""
        body = {"budgetId": workspace_id}
        try:
            await self._api.post(f"{self._engine_url}{ACTIVATION_PATH}", body)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Engine activation of {} failed ({}), trying proxy", workspace_id, get_error_message(exc))
        else:
            logger.debug("Engine activated workspace {}", workspace_id)
            return

        try:
            await self._api.post(ACTIVATION_PATH, body)
        except Exception as exc:  # noqa: BLE001
            logger.error("Proxy activation of {} also failed: {}", workspace_id, get_error_message(exc))
        else:
            logger.debug("Engine activated workspace {} via proxy", workspace_id)

    # -- Display names ---------------------------------------------------------

    def _resolve(self, record: WorkspaceRecord) -> Workspace:
        """Apply display-name precedence: local override > server > derived."""
        key = DISPLAY_NAME_KEY.format(record.id)
        stored = (self._storage.get_raw(key) or "").strip()
        if stored:
            display_name = stored
        else:
            display_name = record.display_name or derive_display_name(record.name)
            self._storage.set(key, display_name)
        return Workspace(
            id=record.id,
            name=record.name,
            display_name=display_name,
            color=record.color or DEFAULT_WORKSPACE_COLOR,
            original_name=record.name,
        )

    def set_custom_display_name(self, workspace_id: str, name: str) -> None:
        """Persist the user's own name for a workspace."""
        name = name.strip()
        self._storage.set(DISPLAY_NAME_KEY.format(workspace_id), name)
        if self.current_workspace is not None and self.current_workspace.id == workspace_id:
            self.current_workspace = self.current_workspace.model_copy(update={"display_name": name})

    # -- Default workspace -----------------------------------------------------

    async def fetch_default_workspace(self) -> str | None:
        """Read the user's default workspace id from preferences."""
        try:
            raw = await self._api.fetch_with_error_handling(PREFERENCES_ENDPOINT)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error fetching default workspace: {}", get_error_message(exc))
            return None
        preferences = UserPreferences.model_validate(raw or {})
        if preferences.default_workspace_id:
            self.default_workspace_id = preferences.default_workspace_id
        return preferences.default_workspace_id

    async def set_as_default_workspace(self, workspace_id: str) -> bool:
        try:
            await self._api.post(PREFERENCES_ENDPOINT, {"defaultWorkspaceId": workspace_id})
        except Exception as exc:  # noqa: BLE001
            logger.error("Error setting default workspace: {}", get_error_message(exc))
            self._notify_later("error", "Failed to set default workspace")
            return False

        self.default_workspace_id = workspace_id
        self._notify_later("success", "Default workspace set successfully")
        if self.current_workspace_id is None:
            logger.info("No current workspace, loading the new default")
            await self.load_workspace(workspace_id)
        return True

    async def clear_default_workspace(self) -> bool:
        try:
            await self._api.post(PREFERENCES_ENDPOINT, {"defaultWorkspaceId": None})
        except Exception as exc:  # noqa: BLE001
            logger.error("Error clearing default workspace: {}", get_error_message(exc))
            self._notify_later("error", "Failed to clear default workspace")
            return False

        self.default_workspace_id = None
        self._notify_later("success", "Default workspace cleared")
        return True

    def is_default_workspace(self, workspace_id: str) -> bool:
        return self.default_workspace_id == workspace_id

    # -- Helpers ---------------------------------------------------------------

    def _reset(self) -> None:
        self.current_workspace = None
        self.current_workspace_id = None
        self.status = WorkspaceStatus.UNLOADED

    @property
    def pending_notifications(self) -> int:
        return len(self._pending_notifications)

    def close(self) -> None:
        """Drop delayed notifications that have not been shown yet."""
        for handle in self._pending_notifications:
            handle.cancel()
        self._pending_notifications.clear()

    def _notify_later(self, level: Literal["success", "error"], title: str) -> None:
        notify = getattr(self._notifier, level)
        if self._notification_delay <= 0:
            notify(title)
            return

        def _fire() -> None:
            self._pending_notifications.discard(handle)
            notify(title)

        handle = asyncio.get_running_loop().call_later(self._notification_delay, _fire)
        self._pending_notifications.add(handle)

    async def _go(self, path: str) -> None:
        if self._navigate is None:
            logger.debug("Navigate to {}", path)
            return
        result = self._navigate(path)
        if inspect.isawaitable(result):
            await result
