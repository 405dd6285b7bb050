"""Shared test fixtures: an in-process fake of the backends the client talks to.

The fake is a FastAPI app served through ``httpx.ASGITransport``, so no
network or Docker is needed.  One app answers for every host; handlers use the
request's host to tell the primary API (``api.test``) from the budget engine
(``engine.test``).  Every request is recorded in ``FakeBackend.hits``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from odzai.client.app import OdzaiClient, build_client
from odzai.client.notify import RecordingNotifier
from odzai.client.settings import OdzaiSettings, get_settings

API_URL = "http://api.test"
ENGINE_URL = "http://engine.test"


@dataclass
class FakeBackend:
    """Mutable state behind the fake API."""

    workspaces: dict[str, dict[str, Any]] = field(default_factory=dict)
    preferences: dict[str, Any] = field(default_factory=dict)
    accounts: list[dict[str, Any]] = field(default_factory=list)

    hits: list[tuple[str, str, str]] = field(default_factory=list)
    """(method, host, path) of every request received."""

    activations: list[tuple[str, str]] = field(default_factory=list)
    """(host, budgetId) of every successful activation."""

    # Failure switches
    fail_writes: bool = False
    fail_preferences: bool = False
    engine_down: bool = False
    proxy_down: bool = False
    broken_detail: set[str] = field(default_factory=set)
    flaky_failures: int = 0

    # Gates: when set to an Event, the handler waits for it.
    write_gate: asyncio.Event | None = None
    detail_gate: asyncio.Event | None = None
    slow_gate: asyncio.Event = field(default_factory=asyncio.Event)

    next_id: int = 1

    def count(self, method: str, path: str, host: str | None = None) -> int:
        return sum(1 for m, h, p in self.hits if m == method and p == path and (host is None or h == host))


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"message": message}, status_code=status)


def create_fake_app(backend: FakeBackend) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def record(request: Request, call_next: Any) -> Response:
        backend.hits.append((request.method, request.url.hostname or "", request.url.path))
        return await call_next(request)

    # -- Workspaces ------------------------------------------------------------

    @app.get("/api/budgets")
    async def list_budgets() -> list[dict[str, Any]]:
        return list(backend.workspaces.values())

    @app.post("/api/budgets/load")
    async def activate(request: Request) -> Response:
        body = await request.json()
        host = request.url.hostname or ""
        if (host == "engine.test" and backend.engine_down) or (host == "api.test" and backend.proxy_down):
            return _error(503, "Engine unavailable")
        backend.activations.append((host, body["budgetId"]))
        return JSONResponse({"success": True})

    @app.get("/api/budgets/{budget_id}")
    async def get_budget(budget_id: str) -> Response:
        if backend.detail_gate is not None:
            await backend.detail_gate.wait()
        if budget_id in backend.broken_detail:
            return _error(500, "Detail lookup failed")
        workspace = backend.workspaces.get(budget_id)
        if workspace is None:
            return _error(404, f"Budget {budget_id} not found")
        return JSONResponse(workspace)

    # -- Preferences -----------------------------------------------------------

    @app.get("/api/user/preferences")
    async def get_preferences() -> Response:
        if backend.fail_preferences:
            return _error(500, "Preferences unavailable")
        return JSONResponse(backend.preferences)

    @app.post("/api/user/preferences")
    async def set_preferences(request: Request) -> Response:
        if backend.fail_preferences:
            return _error(500, "Preferences unavailable")
        backend.preferences.update(await request.json())
        return JSONResponse(backend.preferences)

    # -- Accounts collection ---------------------------------------------------

    @app.get("/api/accounts")
    async def list_accounts() -> list[dict[str, Any]]:
        return [dict(a) for a in backend.accounts]

    @app.get("/api/accounts/{account_id}")
    async def get_account(account_id: str) -> Response:
        for account in backend.accounts:
            if account["id"] == account_id:
                return JSONResponse(account)
        return _error(404, "Account not found")

    @app.post("/api/accounts")
    async def create_account(request: Request) -> Response:
        if backend.write_gate is not None:
            await backend.write_gate.wait()
        if backend.fail_writes:
            return _error(500, "Create failed")
        account = {"id": f"acc-{backend.next_id}", "balance": 0, **(await request.json())}
        backend.next_id += 1
        backend.accounts.append(account)
        return JSONResponse(account, status_code=201)

    @app.patch("/api/accounts/{account_id}")
    async def update_account(account_id: str, request: Request) -> Response:
        if backend.write_gate is not None:
            await backend.write_gate.wait()
        if backend.fail_writes:
            return _error(500, "Update failed")
        for account in backend.accounts:
            if account["id"] == account_id:
                account.update(await request.json())
                return JSONResponse(account)
        return _error(404, "Account not found")

    @app.delete("/api/accounts/{account_id}")
    async def delete_account(account_id: str) -> Response:
        if backend.fail_writes:
            return _error(500, "Delete failed")
        backend.accounts[:] = [a for a in backend.accounts if a["id"] != account_id]
        return Response(status_code=204)

    # -- Plumbing endpoints for the HTTP layer ---------------------------------

    @app.post("/api/echo")
    async def echo(request: Request) -> Response:
        await asyncio.sleep(0.02)
        return JSONResponse({"received": await request.json()})

    @app.get("/api/error")
    async def error() -> Response:
        return JSONResponse({"error": "bad input"}, status_code=400)

    @app.get("/api/plain-error")
    async def plain_error() -> Response:
        return Response("nope", status_code=502, media_type="text/plain")

    @app.get("/api/flaky")
    async def flaky() -> Response:
        if backend.flaky_failures > 0:
            backend.flaky_failures -= 1
            return _error(503, "Try again")
        return JSONResponse({"ok": True})

    @app.get("/api/slow")
    async def slow() -> Response:
        await backend.slow_gate.wait()
        return JSONResponse({"ok": True})

    @app.get("/api/items")
    async def items() -> list[dict[str, Any]]:
        return [{"id": "1"}]

    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def http_client(backend: FakeBackend) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the fake app."""
    transport = ASGITransport(app=create_fake_app(backend))
    async with AsyncClient(transport=transport) as ac:
        yield ac


@pytest.fixture
def settings(tmp_path) -> OdzaiSettings:
    return OdzaiSettings(
        _env_file=None,
        api_url=API_URL,
        engine_url=ENGINE_URL,
        data_root=str(tmp_path),
        write_batch_delay=0.01,
        notification_delay=0,
    )


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[Callable[[str, str], None]]:
    """Set env vars for one test and invalidate the settings cache."""

    def _set(key: str, value: str) -> None:
        monkeypatch.setenv(key, value)
        get_settings.cache_clear()

    yield _set
    get_settings.cache_clear()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(
    settings: OdzaiSettings,
    notifier: RecordingNotifier,
    http_client: AsyncClient,
) -> AsyncIterator[OdzaiClient]:
    """Fully wired client talking to the fake backend."""
    c = build_client(settings, notifier=notifier, http_client=http_client)
    yield c
    await c.aclose()
