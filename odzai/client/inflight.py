"""In-process registry of in-flight HTTP requests.

Maps a request signature (method, URL, body) to the task performing it, so
identical concurrent requests share one network call.  Ephemeral -- empty on
process restart and never shared between client instances.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger


class InFlightRegistry:
    """Registry of currently executing requests, keyed by signature.

    Also provides a drain mechanism for shutdown: ``wait_until_drained``
    blocks until every registered request has been evicted.
    """

    def __init__(self) -> None:
        self._requests: dict[str, asyncio.Task[Any]] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no requests).

    # -- Mutation --------------------------------------------------------------

    def register(self, key: str, task: asyncio.Task[Any]) -> None:
        logger.trace("InFlight: register {}", key)
        self._requests[key] = task
        self._drain_event.clear()

    def unregister(self, key: str, task: asyncio.Task[Any] | None = None) -> None:
        """Evict *key*.  When *task* is given, only evict if it is still the registered one."""
        current = self._requests.get(key)
        if current is not None and (task is None or current is task):
            del self._requests[key]
            logger.trace("InFlight: unregister {}", key)
        if not self._requests:
            self._drain_event.set()

    # -- Query -----------------------------------------------------------------

    def get(self, key: str) -> asyncio.Task[Any] | None:
        return self._requests.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._requests

    @property
    def active_count(self) -> int:
        return len(self._requests)

    # -- Lifecycle -------------------------------------------------------------

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all requests have been evicted.

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with requests still in flight.
        """
        if not self._requests:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "InFlight: drain timed out after {}s with {} requests still active",
                timeout,
                len(self._requests),
            )
            return False
        else:
            return True

    def cancel_all(self) -> int:
        """Cancel every in-flight request.  Returns the number cancelled."""
        count = 0
        for key, task in list(self._requests.items()):
            if not task.done():
                task.cancel()
                count += 1
                logger.info("InFlight: cancelled {}", key)
        return count
