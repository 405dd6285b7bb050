"""In-memory backend: session tier and fallback for unavailable storage."""

from __future__ import annotations


class MemoryBackend:
    """Dict-backed implementation of the KeyValueBackend protocol."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return list(self._data)
