"""HTTP request layer.

``ApiClient`` wraps an ``httpx.AsyncClient`` with:

- JSON handling and error normalization (``ApiError`` carries status + payload)
- in-flight de-duplication: identical concurrent requests share one call
- a short-TTL read-through cache for GETs (``fetcher``)
- timeout / cancellation for individual requests (``enhanced_fetch``)
- ``api_request``: run a request and report the outcome to the notifier

It also hosts the pure optimistic-update helpers used by the resource layer.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from odzai.client.errors import (
    ApiError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
    get_error_message,
)
from odzai.client.inflight import InFlightRegistry
from odzai.client.models.entities import Entity, build_entity, merge_entity
from odzai.client.models.enums import StorageTier

if TYPE_CHECKING:
    from collections.abc import Sequence

    from odzai.client.notify import Notifier
    from odzai.client.storage.facade import Storage

T = TypeVar("T")

DEFAULT_CACHE_TTL = 300.0
DEFAULT_TIMEOUT = 30.0


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float


def request_key(method: str, url: str, body: str | None) -> str:
    """Signature used to de-duplicate in-flight requests."""
    return f"{method.upper()}:{url}:{body if body is not None else '{}'}"


def encode_body(body: Any) -> str | None:
    if body is None:
        return None
    if isinstance(body, BaseModel):
        return body.model_dump_json(by_alias=True, exclude_unset=True)
    return json.dumps(body, default=to_jsonable_python)


class ApiClient:
    """JSON-over-HTTP client with de-duplication and a read-through cache.

    One instance per application; its caches and in-flight map are never
    shared with other instances.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        storage: Storage | None = None,
        notifier: Notifier | None = None,
        http_client: httpx.AsyncClient | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._storage = storage
        self._notifier = notifier
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._clock = clock
        self._cache: dict[str, CacheEntry[Any]] = {}
        self.inflight = InFlightRegistry()

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_api_url(self, path: str) -> str:
        """Join *path* onto the API base URL; absolute URLs pass through."""
        if path.startswith(("http://", "https://")):
            return path
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized}"

    # -- Core request ----------------------------------------------------------

    def fetch_with_error_handling(
        self,
        url: str,
        *,
        method: str = "GET",
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Awaitable[Any]:
        """Issue a request, sharing the call with identical in-flight requests.

        Registration happens synchronously, so duplicates issued in the same
        tick always see each other.  Each caller gets a shielded view of the
        shared task: cancelling one awaiter leaves the request running for the
        rest.  Must be called with a running event loop.
        """
        key = request_key(method, url, body)
        task = self.inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._send(method, url, body, headers))
            self.inflight.register(key, task)
            task.add_done_callback(self._evict_later(key))
        else:
            logger.debug("Joining in-flight request {}", key)
        return asyncio.shield(task)

    def _evict_later(self, key: str) -> Callable[[asyncio.Task[Any]], None]:
        def _callback(task: asyncio.Task[Any]) -> None:
            # Deferred one more tick so callers resuming on this result still
            # observe the entry.
            asyncio.get_running_loop().call_soon(self.inflight.unregister, key, task)

        return _callback

    async def _send(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: Mapping[str, str] | None,
    ) -> Any:
        full_url = self.build_api_url(url)
        merged_headers = {"Content-Type": "application/json", **(headers or {})}
        logger.debug("{} {}", method, full_url)
        try:
            response = await self._client.request(method, full_url, content=body, headers=merged_headers)
        except httpx.TimeoutException as exc:
            msg = f"Request to {full_url} timed out"
            raise RequestTimeoutError(msg, url=full_url) from exc
        except httpx.HTTPError as exc:
            msg = f"Network error for {method} {full_url}: {exc}"
            raise TransportError(msg) from exc

        if not response.is_success:
            raise _error_from_response(response)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            msg = f"Invalid JSON in response from {full_url}"
            raise TransportError(msg) from exc

    # -- Cached reads ----------------------------------------------------------

    async def fetcher(self, url: str, *, headers: Mapping[str, str] | None = None) -> Any:
        """GET with a read-through cache keyed by URL.

        Only successful responses are cached; errors reach every concurrent
        awaiter through the shared in-flight request.
        """
        entry = self._cache.get(url)
        if entry is not None:
            if self._clock() - entry.timestamp < self._cache_ttl:
                return entry.data
            del self._cache[url]

        data = await self.fetch_with_error_handling(url, headers=headers)
        self._cache[url] = CacheEntry(data=data, timestamp=self._clock())
        return data

    def invalidate(self, url: str) -> None:
        """Drop the cached response for *url* (if any)."""
        self._cache.pop(url, None)

    def invalidate_cache(self, keys: Sequence[str]) -> None:
        """Drop cached responses and the session-tier markers for *keys*."""
        for key in keys:
            self._cache.pop(key, None)
            if self._storage is not None:
                self._storage.remove(f"swr:{key}", StorageTier.SESSION)

    def sweep_cache(self) -> int:
        """Purge expired cache entries.  Returns the number removed."""
        now = self._clock()
        expired = [url for url, entry in self._cache.items() if now - entry.timestamp >= self._cache_ttl]
        for url in expired:
            del self._cache[url]
        if expired:
            logger.debug("Cache sweep removed {} entries", len(expired))
        return len(expired)

    async def run_cache_sweeper(self, interval: float) -> None:
        """Call ``sweep_cache`` every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep_cache()

    def fetch_with_cache_busting(self, url: str, *, headers: Mapping[str, str] | None = None) -> Awaitable[Any]:
        """GET *url* with a timestamp parameter so no intermediate cache answers it."""
        separator = "&" if "?" in url else "?"
        return self.fetch_with_error_handling(f"{url}{separator}_={int(time.time() * 1000)}", headers=headers)

    # -- Cancellable request ---------------------------------------------------

    async def enhanced_fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
        signal: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Issue a request that is aborted on *signal* or after *timeout* seconds.

        Not de-duplicated: the request owns its cancellation.  Raises
        ``RequestCancelledError`` when the signal fires first and
        ``RequestTimeoutError`` when the deadline passes first.
        """
        timeout = self._timeout if timeout is None else timeout
        full_url = self.build_api_url(url)
        if signal is not None and signal.is_set():
            msg = f"Request to {full_url} was cancelled"
            raise RequestCancelledError(msg, url=full_url)

        request = asyncio.create_task(self._send(method, url, body, headers))
        signal_wait = asyncio.create_task(signal.wait()) if signal is not None else None
        waiters: set[asyncio.Future[Any]] = {request}
        if signal_wait is not None:
            waiters.add(signal_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if signal_wait is not None:
                signal_wait.cancel()
            if not request.done():
                request.cancel()

        if request in done:
            return request.result()
        if signal_wait is not None and signal_wait in done:
            msg = f"Request to {full_url} was cancelled"
            raise RequestCancelledError(msg, url=full_url)
        msg = f"Request to {full_url} timed out after {timeout}s"
        raise RequestTimeoutError(msg, url=full_url)

    # -- Verb helpers ----------------------------------------------------------

    def post(self, url: str, body: Any = None, *, headers: Mapping[str, str] | None = None) -> Awaitable[Any]:
        return self.fetch_with_error_handling(url, method="POST", body=encode_body(body), headers=headers)

    def put(self, url: str, body: Any = None, *, headers: Mapping[str, str] | None = None) -> Awaitable[Any]:
        return self.fetch_with_error_handling(url, method="PUT", body=encode_body(body), headers=headers)

    def patch(self, url: str, body: Any = None, *, headers: Mapping[str, str] | None = None) -> Awaitable[Any]:
        return self.fetch_with_error_handling(url, method="PATCH", body=encode_body(body), headers=headers)

    def delete(self, url: str, *, headers: Mapping[str, str] | None = None) -> Awaitable[Any]:
        return self.fetch_with_error_handling(url, method="DELETE", headers=headers)

    # -- Notifying wrapper -----------------------------------------------------

    async def api_request(
        self,
        request_fn: Callable[[], Awaitable[T]],
        *,
        success_message: str | None = None,
        error_message: str = "Operation failed",
        show_success_toast: bool = True,
        show_error_toast: bool = True,
    ) -> T | None:
        """Run *request_fn*, notify the outcome, and return ``None`` on failure.

        For callers that do not need to branch on the error.  Cancellations
        are logged but never shown to the user.
        """
        try:
            result = await request_fn()
        except RequestCancelledError as exc:
            logger.debug("API request cancelled: {}", exc.url)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.error("API Error ({}): {}", error_message, get_error_message(exc))
            if show_error_toast and self._notifier is not None:
                self._notifier.error(error_message, get_error_message(exc))
            return None

        if show_success_toast and success_message and self._notifier is not None:
            self._notifier.success(success_message)
        return result

    # -- Lifecycle -------------------------------------------------------------

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Error normalization
# ---------------------------------------------------------------------------


def _error_from_response(response: httpx.Response) -> ApiError:
    try:
        data = response.json()
    except ValueError:
        data = {"message": response.reason_phrase}
    if not isinstance(data, dict):
        data = {"message": response.reason_phrase, "detail": data}

    message = data.get("message") or data.get("error") or "An error occurred"
    if not isinstance(message, str):
        message = get_error_message(message)
    logger.warning("HTTP {} from {}: {}", response.status_code, response.request.url, message)
    return ApiError(message, status=response.status_code, data=data)


# ---------------------------------------------------------------------------
# Optimistic update helpers
# ---------------------------------------------------------------------------


def get_optimistic_data(
    current: Sequence[T] | None,
    changes: Mapping[str, Any],
    identify: Callable[[T], bool],
    *,
    model: type[Entity] | None = None,
) -> list[T]:
    """Return a new list with *changes* merged into the matching item.

    When nothing matches, the change is appended as a new item (built
    from *model* when given, otherwise a plain dict).  Inputs are never
    mutated.  Raises ``ValidationError`` if the built model would be
    missing a required field.
    """
    items = list(current or [])
    for index, item in enumerate(items):
        if identify(item):
            items[index] = _merge(item, changes)
            return items
    items.append(build_entity(model, changes) if model is not None else dict(changes))  # type: ignore[arg-type]
    return items


def get_optimistic_remove(current: Sequence[T] | None, identify: Callable[[T], bool]) -> list[T]:
    """Return a new list without the items matched by *identify*."""
    return [item for item in (current or []) if not identify(item)]


def _merge(item: Any, changes: Mapping[str, Any]) -> Any:
    if isinstance(item, BaseModel):
        return merge_entity(item, changes)
    return {**item, **changes}
