"""Application context: one ``OdzaiClient`` per application instance.

Everything that would otherwise be module-level state (storage mirror and
write queue, response cache, in-flight map, resource state, current
workspace) hangs off this object, so two clients in the same process --
e.g. in tests -- never share anything.

Usage::

    async with open_client(settings) as client:
        await client.workspaces.initialize()
        accounts = client.resources.use_collection("/api/accounts", Account)
        await accounts.load()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from odzai.client.http import ApiClient
from odzai.client.notify import LogNotifier
from odzai.client.resources import ResourceCache
from odzai.client.settings import OdzaiSettings, get_settings
from odzai.client.storage.facade import Storage
from odzai.client.storage.local import LocalFileBackend
from odzai.client.storage.memory import MemoryBackend
from odzai.client.workspace import Navigate, WorkspaceSession

if TYPE_CHECKING:
    from odzai.client.notify import Notifier
    from odzai.client.storage.base import KeyValueBackend


@dataclass
class OdzaiClient:
    """Wired client core for a single application instance."""

    settings: OdzaiSettings
    storage: Storage
    api: ApiClient
    resources: ResourceCache
    workspaces: WorkspaceSession
    notifier: Notifier
    _tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def start_background(self, *, watch_storage: bool = False) -> None:
        """Start the cache sweeper (and optionally the cross-process storage watcher)."""
        self._tasks.append(asyncio.create_task(self.api.run_cache_sweeper(self.settings.cache_sweep_interval)))
        if watch_storage:
            self._tasks.append(asyncio.create_task(self.storage.watch_external()))

    async def aclose(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self.workspaces.close()

        if self.resources.pending_mutations > 0:
            logger.info("Waiting for {} pending mutations", self.resources.pending_mutations)
            if not await self.resources.drain(timeout=self.settings.drain_timeout):
                logger.warning("Mutations still pending after drain timeout")

        if self.api.inflight.active_count > 0:
            logger.info("Waiting for {} in-flight requests", self.api.inflight.active_count)
            if not await self.api.inflight.wait_until_drained(timeout=self.settings.drain_timeout):
                cancelled = self.api.inflight.cancel_all()
                logger.warning("Cancelled {} requests after drain timeout", cancelled)

        await self.storage.aclose()
        await self.api.aclose()
        logger.debug("Client closed")


def build_client(
    settings: OdzaiSettings | None = None,
    *,
    notifier: Notifier | None = None,
    navigate: Navigate | None = None,
    http_client: httpx.AsyncClient | None = None,
    durable_backend: KeyValueBackend | None = None,
) -> OdzaiClient:
    """Construct a client without starting background tasks."""
    settings = settings or get_settings()
    notifier = notifier or LogNotifier()

    storage = Storage(
        durable_backend or LocalFileBackend(settings.data_root),
        MemoryBackend(),
        batch_delay=settings.write_batch_delay,
    )
    api = ApiClient(
        settings.api_url,
        storage=storage,
        notifier=notifier,
        http_client=http_client,
        cache_ttl=settings.cache_ttl,
        timeout=settings.request_timeout,
    )
    return OdzaiClient(
        settings=settings,
        storage=storage,
        api=api,
        resources=ResourceCache(api, notifier),
        workspaces=WorkspaceSession(
            api,
            storage,
            engine_url=settings.engine_url,
            notifier=notifier,
            navigate=navigate,
            notification_delay=settings.notification_delay,
        ),
        notifier=notifier,
    )


@asynccontextmanager
async def open_client(
    settings: OdzaiSettings | None = None,
    *,
    notifier: Notifier | None = None,
    navigate: Navigate | None = None,
    http_client: httpx.AsyncClient | None = None,
    durable_backend: KeyValueBackend | None = None,
    watch_storage: bool = False,
) -> AsyncIterator[OdzaiClient]:
    """Build a client, run its background tasks, and close it on exit."""
    client = build_client(
        settings,
        notifier=notifier,
        navigate=navigate,
        http_client=http_client,
        durable_backend=durable_backend,
    )
    logger.info("Client starting (api={}, engine={})", client.settings.api_url, client.settings.engine_url)
    client.start_background(watch_storage=watch_storage)
    try:
        yield client
    finally:
        await client.aclose()
