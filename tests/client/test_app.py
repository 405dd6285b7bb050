"""Tests for client wiring, lifecycle and settings."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from odzai.client.app import build_client, open_client
from odzai.client.models.entities import Account
from odzai.client.settings import OdzaiSettings, get_settings
from odzai.client.storage.facade import Storage
from odzai.client.storage.local import LocalFileBackend
from odzai.client.storage.memory import MemoryBackend
from odzai.client.workspace import CURRENT_WORKSPACE_KEY

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeBackend
    from httpx import AsyncClient

    from odzai.client.notify import RecordingNotifier

async def test_open_client_flushes_storage_on_exit(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient
) -> None:
    lazy = settings.model_copy(update={"write_batch_delay": 60})
    async with open_client(lazy, notifier=notifier, http_client=http_client) as client:
        client.storage.set("draft", {"memo": "groceries"})
        assert client.storage.pending_writes == 1

    reopened = Storage(LocalFileBackend(settings.data_root))
    assert reopened.get("draft") == {"memo": "groceries"}

async def test_open_client_stops_background_tasks(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient
) -> None:
    async with open_client(settings, notifier=notifier, http_client=http_client, watch_storage=True) as client:
        tasks = list(client._tasks)
        assert len(tasks) == 2

    assert all(task.done() for task in tasks)
    assert client._tasks == []

async def test_close_waits_for_in_flight_requests(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient, backend: FakeBackend
) -> None:
    client = build_client(settings, notifier=notifier, http_client=http_client)
    pending = client.api.fetch_with_error_handling("/api/slow")
    asyncio.get_running_loop().call_later(0.02, backend.slow_gate.set)

    await client.aclose()

    assert await pending == {"ok": True}
    assert client.api.inflight.active_count == 0

async def test_close_cancels_requests_after_drain_timeout(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient
) -> None:
    impatient = settings.model_copy(update={"drain_timeout": 0.02})
    client = build_client(impatient, notifier=notifier, http_client=http_client)
    pending = client.api.fetch_with_error_handling("/api/slow")
    await asyncio.sleep(0.01)

    await client.aclose()
    await asyncio.sleep(0.05)

    assert pending.cancelled()

async def test_close_waits_for_abandoned_mutations(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient, backend: FakeBackend
) -> None:
    backend.accounts.append({"id": "a", "name": "X"})
    client = build_client(settings, notifier=notifier, http_client=http_client)
    accounts = client.resources.use_collection("/api/accounts", Account)
    await accounts.load()
    backend.write_gate = asyncio.Event()

    pending = asyncio.create_task(accounts.create({"name": "Cash"}))
    await asyncio.sleep(0.01)
    pending.cancel()
    asyncio.get_running_loop().call_later(0.02, backend.write_gate.set)

    await client.aclose()

    assert client.resources.pending_mutations == 0
    assert notifier.titles("success") == ["Item created successfully"]
    assert [a["name"] for a in backend.accounts] == ["X", "Cash"]

async def test_clients_are_isolated(
    settings: OdzaiSettings, notifier: RecordingNotifier, http_client: AsyncClient, backend: FakeBackend
) -> None:
    backend.workspaces["w1"] = {"id": "w1", "name": "acme"}
    first = build_client(settings, notifier=notifier, http_client=http_client, durable_backend=MemoryBackend())
    second = build_client(settings, notifier=notifier, http_client=http_client, durable_backend=MemoryBackend())

    await first.workspaces.load_workspace("w1")
    await first.api.fetcher("/api/items")

    assert second.workspaces.current_workspace_id is None
    assert second.storage.get_raw(CURRENT_WORKSPACE_KEY) is None
    await second.api.fetcher("/api/items")
    assert backend.count("GET", "/api/items") == 2

    await first.aclose()
    await second.aclose()

def test_settings_from_env(set_env: Callable[[str, str], None], tmp_path) -> None:
    set_env("ODZAI_API_URL", "http://budget.example")
    set_env("ODZAI_DATA_ROOT", str(tmp_path))
    set_env("ODZAI_FORCE_DEFAULT", "true")
    set_env("ODZAI_LOG_FILE", str(tmp_path / "odzai.log"))

    settings = get_settings()

    assert settings.api_url == "http://budget.example"
    assert settings.data_root == str(tmp_path)
    assert settings.force_default is True
    assert settings.engine_url == "http://localhost:3001"
    assert settings.log_file == str(tmp_path / "odzai.log")
    assert settings.log_retention == 3
    assert get_settings() is settings
