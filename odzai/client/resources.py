"""Reactive data resources over the HTTP layer.

A resource binds a cache key (normally an endpoint URL) to shared state:
two resources created for the same key see the same ``ResourceState``, so a
revalidation triggered through one is visible through the other.

Mutations follow one pattern:

1. apply the optimistic change to local state (before any suspension point)
2. issue the request
3. notify success or failure
4. revalidate against the server -- always, so the server's answer replaces
   the optimistic guess either way
5. re-raise on failure so the caller can react as well
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from odzai.client.errors import RequestCancelledError, get_error_message
from odzai.client.http import get_optimistic_data, get_optimistic_remove
from odzai.client.models.entities import Entity, build_entity, merge_entity
from odzai.client.notify import LogNotifier

if TYPE_CHECKING:
    from odzai.client.http import ApiClient
    from odzai.client.notify import Notifier

T = TypeVar("T")
E = TypeVar("E", bound=Entity)

Parser = Callable[[Any], Any]


def _identity(raw: Any) -> Any:
    return raw


@dataclass
class ResourceState(Generic[T]):
    """Current view of one cache key."""

    data: T | None = None
    error: Exception | None = None
    is_loading: bool = False
    is_validating: bool = False


class ResourceCache:
    """Shared state for every resource of one application instance."""

    def __init__(self, api: ApiClient, notifier: Notifier | None = None) -> None:
        self.api = api
        self.notifier: Notifier = notifier or LogNotifier()
        self._states: dict[str, ResourceState[Any]] = {}
        self._parsers: dict[str, Parser] = {}
        self._mutations: set[asyncio.Task[Any]] = set()

    # -- Factories -------------------------------------------------------------

    def use_data(self, key: str | None, parse: Parser | None = None) -> DataResource[Any]:
        return DataResource(self, key, parse or _identity)

    def use_collection(self, endpoint: str, model: type[E]) -> CollectionResource[E]:
        return CollectionResource(self, endpoint, model)

    def use_item(self, item_id: str | None, endpoint: str, model: type[E]) -> ItemResource[E]:
        return ItemResource(self, item_id, endpoint, model)

    # -- State -----------------------------------------------------------------

    def register(self, key: str, parse: Parser) -> ResourceState[Any]:
        """Bind *parse* to *key* and return the key's shared state.

        A typed parser replaces the raw one (re-parsing data already loaded);
        two different typed parsers for one key are a programming error.
        """
        state = self.state(key)
        current = self._parsers.get(key)
        if current is None or current is _identity:
            self._parsers[key] = parse
            if parse is not _identity and state.data is not None:
                state.data = parse(state.data)
        elif parse is not _identity and parse != current:
            msg = f"Resource {key!r} is already bound to a different model"
            raise ValueError(msg)
        return state

    def state(self, key: str) -> ResourceState[Any]:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = ResourceState()
        return state

    def set_data(self, key: str, data: Any) -> None:
        self.state(key).data = data

    async def revalidate(self, key: str, *, use_cache: bool = False) -> Any:
        """Fetch *key* and replace its state.

        Errors are recorded on ``state.error`` rather than raised; the last
        successful data stays in place.
        """
        state = self.state(key)
        parse = self._parsers.get(key, _identity)
        state.is_validating = True
        state.is_loading = state.data is None
        try:
            if not use_cache:
                self.api.invalidate(key)
            raw = await self.api.fetcher(key)
            state.data = parse(raw)
            state.error = None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Revalidation of {} failed: {}", key, get_error_message(exc))
            state.error = exc
        finally:
            state.is_validating = False
            state.is_loading = False
        return state.data

    # -- Mutations -------------------------------------------------------------

    def track(self, coro: Awaitable[T]) -> asyncio.Task[T]:
        """Run a mutation to completion even if the caller stops waiting."""
        task = asyncio.ensure_future(coro)
        self._mutations.add(task)
        task.add_done_callback(self._mutation_done)
        return task

    def _mutation_done(self, task: asyncio.Task[Any]) -> None:
        self._mutations.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Mutation finished with error: {}", get_error_message(task.exception()))

    @property
    def pending_mutations(self) -> int:
        return len(self._mutations)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for every tracked mutation, including abandoned ones.

        Returns ``False`` if *timeout* expired first.  Never cancels anything.
        """
        if not self._mutations:
            return True
        _, pending = await asyncio.wait(set(self._mutations), timeout=timeout)
        return not pending

    # -- Global mutation helpers -----------------------------------------------

    async def invalidate(self, keys: list[str]) -> None:
        """Revalidate every known key in *keys*."""
        for key in keys:
            if key in self._states:
                await self.revalidate(key)

    async def update_collection(self, key: str, updater: Callable[[list[Any] | None], list[Any]]) -> None:
        """Replace a collection's data with ``updater(current)``, then revalidate."""
        state = self.state(key)
        state.data = updater(state.data)
        await self.revalidate(key)

    async def update_item_in_collection(self, key: str, item_id: str, updates: Mapping[str, Any]) -> None:
        """Merge *updates* into one item of a collection, then revalidate."""
        state = self.state(key)
        if state.data is None:
            return
        state.data = [_merge_item(item, updates) if _item_id(item) == item_id else item for item in state.data]
        await self.revalidate(key)


class DataResource(Generic[T]):
    """A single cache key.  A ``None`` key never triggers a request."""

    def __init__(self, cache: ResourceCache, key: str | None, parse: Parser = _identity) -> None:
        self._cache = cache
        self.key = key
        self._state: ResourceState[T] = cache.register(key, parse) if key is not None else ResourceState()

    # -- State -----------------------------------------------------------------

    @property
    def state(self) -> ResourceState[T]:
        return self._state

    @property
    def data(self) -> T | None:
        return self._state.data

    @property
    def error(self) -> Exception | None:
        return self._state.error

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_validating(self) -> bool:
        return self._state.is_validating

    # -- Fetch -----------------------------------------------------------------

    async def load(self) -> T | None:
        """Initial read; served from the response cache when fresh."""
        if self.key is None:
            return None
        return await self._cache.revalidate(self.key, use_cache=True)

    async def refresh(self) -> T | None:
        """Revalidate against the server, bypassing the response cache."""
        if self.key is None:
            return None
        return await self._cache.revalidate(self.key)

    def mutate(self, data: T | None) -> None:
        """Replace local data without revalidating."""
        self._state.data = data

    # -- Mutation pattern ------------------------------------------------------

    async def _commit(
        self,
        request: Callable[[], Awaitable[Any]],
        *,
        success_message: str,
        error_message: str,
    ) -> Any:
        # Shielded: a cancelled caller must not skip notification or revalidation.
        task = self._cache.track(self._settle(request, success_message=success_message, error_message=error_message))
        return await asyncio.shield(task)

    async def _settle(
        self,
        request: Callable[[], Awaitable[Any]],
        *,
        success_message: str,
        error_message: str,
    ) -> Any:
        notifier = self._cache.notifier
        try:
            result = await request()
        except Exception as exc:
            if not isinstance(exc, RequestCancelledError):
                notifier.error(error_message, get_error_message(exc))
            await self.refresh()
            raise
        notifier.success(success_message)
        await self.refresh()
        return result


class CollectionResource(DataResource[list[E]]):
    """A collection endpoint with optimistic create / update / remove."""

    def __init__(self, cache: ResourceCache, endpoint: str, model: type[E]) -> None:
        self.endpoint = endpoint
        self.model = model
        super().__init__(cache, endpoint, _list_parser(model))

    async def create(self, new_item: Mapping[str, Any]) -> E | None:
        """Append *new_item* optimistically, POST it, then revalidate.

        Raises ``ValidationError`` without sending anything when *new_item*
        lacks a required field.
        """
        self.mutate([*(self.data or []), build_entity(self.model, new_item)])
        result = await self._commit(
            lambda: self._cache.api.post(self.endpoint, dict(new_item)),
            success_message="Item created successfully",
            error_message="Failed to create item",
        )
        return _parse_entity(self.model, result)

    async def update(self, item_id: str, updates: Mapping[str, Any]) -> E | None:
        """Merge *updates* into the item (or append it), PATCH, then revalidate."""
        try:
            optimistic = get_optimistic_data(
                self.data, {**updates, "id": item_id}, lambda item: _item_id(item) == item_id, model=self.model
            )
        except ValidationError:
            # Unknown item and a partial payload: nothing valid to show until revalidation.
            logger.debug("No optimistic entry for {} in {}", item_id, self.endpoint)
        else:
            self.mutate(optimistic)
        result = await self._commit(
            lambda: self._cache.api.patch(f"{self.endpoint}/{item_id}", dict(updates)),
            success_message="Item updated successfully",
            error_message="Failed to update item",
        )
        return _parse_entity(self.model, result)

    async def remove(self, item_id: str) -> bool:
        """Drop the item optimistically, DELETE it, then revalidate."""
        self.mutate(get_optimistic_remove(self.data, lambda item: _item_id(item) == item_id))
        await self._commit(
            lambda: self._cache.api.delete(f"{self.endpoint}/{item_id}"),
            success_message="Item deleted successfully",
            error_message="Failed to delete item",
        )
        return True


class ItemResource(DataResource[E]):
    """A single entity at ``{endpoint}/{id}``.  No request while the id is ``None``."""

    def __init__(self, cache: ResourceCache, item_id: str | None, endpoint: str, model: type[E]) -> None:
        self.item_id = item_id
        self.endpoint = endpoint
        self.model = model
        key = f"{endpoint}/{item_id}" if item_id else None
        super().__init__(cache, key, model.model_validate)

    async def update(self, updates: Mapping[str, Any]) -> E | None:
        if self.data is None or not self.item_id:
            return None
        self.mutate(merge_entity(self.data, updates))
        result = await self._commit(
            lambda: self._cache.api.patch(f"{self.endpoint}/{self.item_id}", dict(updates)),
            success_message="Item updated successfully",
            error_message="Failed to update item",
        )
        return _parse_entity(self.model, result)


@lru_cache(maxsize=None)
def _list_parser(model: type[Entity]) -> Parser:
    """One parser per model, so resources for the same key compare equal."""
    return TypeAdapter(list[model]).validate_python


def _item_id(item: Any) -> Any:
    return item.get("id") if isinstance(item, Mapping) else getattr(item, "id", None)


def _merge_item(item: Any, updates: Mapping[str, Any]) -> Any:
    if isinstance(item, Mapping):
        return {**item, **updates}
    return merge_entity(item, updates)


def _parse_entity(model: type[E], raw: Any) -> E | None:
    if not raw:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Unexpected {} payload from server: {}", model.__name__, exc)
        return None
