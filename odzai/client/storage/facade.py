"""Storage facade: two persistence tiers behind one get/set/remove API.

Reads go through an in-memory mirror first, so a value is visible the moment
``set`` returns.  Physical writes are queued and applied in batches after a
short debounce window; all queued writes to the same ``(tier, key)`` collapse
to the newest one, and each tier receives one batch per flush.  Timer-driven
batches for file-backed tiers are written on a worker thread; explicit
``flush()`` writes synchronously.  When a tier's backend is unusable
(read-only directory, quota exceeded) every operation for that tier silently
moves to an in-memory fallback.  Failures are logged, never raised.

The facade holds no module-level state: each application instance owns one
``Storage`` object and with it the mirror, the queue and the timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import threading
import uuid
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any

from anyio import to_thread
from loguru import logger
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from odzai.client.models.enums import StorageTier
from odzai.client.storage.base import BatchBackend, ObservableBackend
from odzai.client.storage.memory import MemoryBackend

if TYPE_CHECKING:
    from collections.abc import Mapping

    from odzai.client.storage.base import KeyValueBackend

DEFAULT_BATCH_DELAY = 0.1


@dataclass
class PendingWrite:
    """A queued mutation.  ``value=None`` is a tombstone (delete on flush)."""

    key: str
    value: str | None
    tier: StorageTier
    timestamp: int


def serialize(value: Any) -> str:
    """Strings are stored verbatim; everything else as JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True)
    return json.dumps(value, default=to_jsonable_python)


def deserialize(raw: str) -> Any:
    """Parse JSON when possible, otherwise return the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class Storage:
    """Batched, mirrored key-value storage over a durable and a session tier."""

    def __init__(
        self,
        durable: KeyValueBackend,
        session: KeyValueBackend | None = None,
        *,
        batch_delay: float = DEFAULT_BATCH_DELAY,
    ) -> None:
        self._backends: dict[StorageTier, KeyValueBackend] = {
            StorageTier.DURABLE: durable,
            StorageTier.SESSION: session if session is not None else MemoryBackend(),
        }
        self._fallbacks: dict[StorageTier, MemoryBackend] = {tier: MemoryBackend() for tier in StorageTier}
        self._available: dict[StorageTier, bool] = {}
        self._mirror: dict[tuple[StorageTier, str], str] = {}
        self._queue: list[PendingWrite] = []
        self._sequence = itertools.count()
        self._batch_delay = batch_delay
        self._timer: asyncio.TimerHandle | None = None
        self._writers: set[asyncio.Task[None]] = set()
        # Guards backend I/O; also touched from worker threads.
        self._io_lock = threading.Lock()
        self._written: dict[tuple[StorageTier, str], int] = {}
        self._cleared_at: dict[StorageTier, int] = {}

    # -- Public API ------------------------------------------------------------

    def get(self, key: str, tier: StorageTier = StorageTier.DURABLE) -> Any:
        """Return the deserialized value for *key*, or ``None``."""
        raw = self.get_raw(key, tier)
        return deserialize(raw) if raw is not None else None

    def get_raw(self, key: str, tier: StorageTier = StorageTier.DURABLE) -> str | None:
        """Return the stored string for *key* without JSON parsing."""
        cached = self._mirror.get((tier, key))
        if cached is not None:
            return cached

        available = self._is_available(tier)
        backend = self._backends[tier] if available else self._fallbacks[tier]
        try:
            raw = backend.get_item(key)
        except OSError as exc:
            logger.error("Storage: error reading {!r} from {} tier: {}", key, tier, exc)
            return None
        if raw is not None and available:
            self._mirror[(tier, key)] = raw
        return raw

    def set(self, key: str, value: Any, tier: StorageTier = StorageTier.DURABLE) -> None:
        """Store *value*; readable immediately, persisted at the next flush."""
        try:
            raw = serialize(value)
        except (TypeError, ValueError) as exc:
            logger.error("Storage: cannot serialize value for {!r}: {}", key, exc)
            return
        self._mirror[(tier, key)] = raw
        self._enqueue(key, raw, tier)

    def remove(self, key: str, tier: StorageTier = StorageTier.DURABLE) -> None:
        self._mirror.pop((tier, key), None)
        seq = next(self._sequence)
        try:
            with self._io_lock:
                self._active(tier).remove_item(key)
                self._written[(tier, key)] = seq
        except OSError as exc:
            logger.error("Storage: error removing {!r} from {} tier: {}", key, tier, exc)
        self._enqueue(key, None, tier, seq)

    def clear(self, tier: StorageTier = StorageTier.DURABLE) -> None:
        """Drop every value of *tier*, including writes not yet flushed."""
        for cache_key in [k for k in self._mirror if k[0] == tier]:
            del self._mirror[cache_key]
        self._queue = [w for w in self._queue if w.tier != tier]
        self._fallbacks[tier].clear()
        # Batches already handed to a worker must not resurrect cleared keys.
        self._cleared_at[tier] = next(self._sequence)
        if self._is_available(tier):
            try:
                with self._io_lock:
                    self._backends[tier].clear()
            except OSError as exc:
                logger.error("Storage: error clearing {} tier: {}", tier, exc)

    def flush(self) -> None:
        """Apply all pending writes now."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._process_queue()

    def keys(self, tier: StorageTier = StorageTier.DURABLE) -> list[str]:
        """Backend keys plus mirror-only keys that have not been flushed yet."""
        try:
            keys = list(self._active(tier).keys())
        except OSError as exc:
            logger.error("Storage: error listing keys of {} tier: {}", tier, exc)
            keys = []
        seen = set(keys)
        for mirror_tier, key in self._mirror:
            if mirror_tier == tier and key not in seen:
                keys.append(key)
                seen.add(key)
        return keys

    @property
    def pending_writes(self) -> int:
        return len(self._queue)

    def close(self) -> None:
        """Flush pending writes.  Call once when the application shuts down."""
        self.flush()

    async def aclose(self) -> None:
        """Flush pending writes and wait for background batches to land."""
        self.flush()
        if self._writers:
            await asyncio.wait(set(self._writers))

    # -- Cross-process sync ----------------------------------------------------

    def handle_external_change(self, key: str, new_value: str | None) -> None:
        """Merge a durable-tier change made by another process into the mirror."""
        if new_value is None:
            self._mirror.pop((StorageTier.DURABLE, key), None)
        else:
            self._mirror[(StorageTier.DURABLE, key)] = new_value
        logger.debug("Storage: external change for {!r}", key)

    def sync_external(self) -> int:
        """Poll the durable backend for external changes.  Returns the count applied."""
        backend = self._backends[StorageTier.DURABLE]
        if not isinstance(backend, ObservableBackend) or not self._is_available(StorageTier.DURABLE):
            return 0
        try:
            with self._io_lock:
                changes = backend.poll_changes()
        except OSError as exc:
            logger.warning("Storage: cannot poll for external changes: {}", exc)
            return 0
        for key, value in changes.items():
            self.handle_external_change(key, value)
        return len(changes)

    async def watch_external(self, interval: float = 1.0) -> None:
        """Run ``sync_external`` every *interval* seconds until cancelled."""
        while True:
            self.sync_external()
            await asyncio.sleep(interval)

    # -- Internals -------------------------------------------------------------

    def _enqueue(self, key: str, value: str | None, tier: StorageTier, timestamp: int | None = None) -> None:
        if timestamp is None:
            timestamp = next(self._sequence)
        self._queue.append(PendingWrite(key=key, value=value, tier=tier, timestamp=timestamp))
        self._schedule()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous caller): writes wait for flush().
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._batch_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        batches = self._take_batches()
        if not batches:
            return
        task = asyncio.get_running_loop().create_task(self._write_in_background(batches))
        self._writers.add(task)
        task.add_done_callback(self._writer_done)

    def _writer_done(self, task: asyncio.Task[None]) -> None:
        self._writers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Storage: background flush failed: {}", task.exception())

    def _process_queue(self) -> None:
        for tier, batch in self._take_batches().items():
            self._write_batch(tier, batch)

    def _take_batches(self) -> dict[StorageTier, list[PendingWrite]]:
        """Coalesce the queue into one batch per tier and settle the mirror."""
        if not self._queue:
            return {}

        latest: dict[tuple[StorageTier, str], PendingWrite] = {}
        for write in self._queue:
            slot = (write.tier, write.key)
            existing = latest.get(slot)
            if existing is None or write.timestamp > existing.timestamp:
                latest[slot] = write
        self._queue = []

        batches: dict[StorageTier, list[PendingWrite]] = {}
        for write in latest.values():
            if write.value is None:
                self._mirror.pop((write.tier, write.key), None)
            else:
                self._mirror[(write.tier, write.key)] = write.value
            batches.setdefault(write.tier, []).append(write)

        logger.debug("Storage: flushing {} writes", len(latest))
        return batches

    def _write_batch(self, tier: StorageTier, batch: list[PendingWrite]) -> None:
        if self._is_available(tier):
            try:
                self._write_locked(self._backends[tier], tier, batch)
            except OSError as exc:
                self._mark_unavailable(tier, exc)
            else:
                return
        _apply_batch(self._fallbacks[tier], {write.key: write.value for write in batch})

    async def _write_in_background(self, batches: dict[StorageTier, list[PendingWrite]]) -> None:
        for tier, batch in batches.items():
            backend = self._backends[tier]
            if not isinstance(backend, BatchBackend) or not self._is_available(tier):
                self._write_batch(tier, batch)
                continue
            try:
                await to_thread.run_sync(partial(self._write_locked, backend, tier, batch))
            except OSError as exc:
                self._mark_unavailable(tier, exc)
                _apply_batch(self._fallbacks[tier], {write.key: write.value for write in batch})

    def _write_locked(self, backend: KeyValueBackend, tier: StorageTier, batch: list[PendingWrite]) -> None:
        """Apply the writes of *batch* that no later write, removal or clear has superseded.

        Runs on the event loop for ``flush()`` and on a worker thread for the
        debounce timer.
        """
        with self._io_lock:
            floor = self._cleared_at.get(tier, -1)
            fresh = [w for w in batch if w.timestamp > max(floor, self._written.get((tier, w.key), -1))]
            if not fresh:
                return
            _apply_batch(backend, {write.key: write.value for write in fresh})
            for write in fresh:
                self._written[(tier, write.key)] = write.timestamp

    def _mark_unavailable(self, tier: StorageTier, exc: OSError) -> None:
        logger.error("Storage: error writing to {} tier, using memory: {}", tier, exc)
        self._available[tier] = False

    def _active(self, tier: StorageTier) -> KeyValueBackend:
        return self._backends[tier] if self._is_available(tier) else self._fallbacks[tier]

    def _is_available(self, tier: StorageTier) -> bool:
        available = self._available.get(tier)
        if available is None:
            available = _accepts_writes(self._backends[tier])
            if not available:
                logger.warning("Storage: {} tier unavailable, falling back to memory", tier)
            self._available[tier] = available
        return available


def _apply_batch(backend: KeyValueBackend, changes: Mapping[str, str | None]) -> None:
    if isinstance(backend, BatchBackend):
        backend.apply_batch(changes)
        return
    for key, value in changes.items():
        if value is None:
            backend.remove_item(key)
        else:
            backend.set_item(key, value)


def _accepts_writes(backend: KeyValueBackend) -> bool:
    """Trial write/delete to check that the backend accepts writes."""
    test_key = f"__storage_test__{uuid.uuid4().hex}"
    try:
        backend.set_item(test_key, "test")
        backend.remove_item(test_key)
    except OSError:
        with contextlib.suppress(OSError):
            backend.remove_item(test_key)
        return False
    return True
