"""Key-value backend interface for the storage facade.

A backend is the physical store behind one storage tier: a JSON file for the
durable tier, a dict for the session tier and for the fallback used when the
real backend is unavailable.  The interface is synchronous, matching the
browser storage it stands in for; batching lives in the facade.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping


@runtime_checkable
class KeyValueBackend(Protocol):
    """String-to-string store.

    Implementations may raise ``OSError`` (or subclasses) on write; the
    facade treats that as "storage unavailable" and falls back to memory.
    """

    def get_item(self, key: str) -> str | None:
        """Return the stored string, or ``None`` if the key is absent."""
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        """Delete a key.  No-op if absent."""
        ...

    def clear(self) -> None:
        ...

    def keys(self) -> list[str]:
        ...


@runtime_checkable
class ObservableBackend(KeyValueBackend, Protocol):
    """Backend that can report changes made by other processes."""

    def poll_changes(self) -> dict[str, str | None]:
        """Return keys changed externally since the last poll or write.

        A ``None`` value means the key was deleted.
        """
        ...


@runtime_checkable
class BatchBackend(KeyValueBackend, Protocol):
    """Backend that can apply many changes in one physical write."""

    def apply_batch(self, changes: Mapping[str, str | None]) -> None:
        """Set every key to its value; a ``None`` value removes the key."""
        ...
