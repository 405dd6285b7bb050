"""Local filesystem backend for the durable storage tier.

All keys of a tier live in a single JSON object::

    {data_root}/storage/durable.json

Writes are atomic: data is written to a temporary file in the same directory,
then renamed to the target path.  This prevents corrupt reads if the process
crashes mid-write, and lets another process read the file at any time.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Mapping


class LocalFileBackend:
    """JSON-file implementation of the ObservableBackend and BatchBackend protocols.

    The file is re-read on every access so that values written by other
    processes are visible; ``poll_changes`` diffs against the last content
    this process saw or wrote.
    """

    def __init__(self, data_root: str | Path, filename: str = "durable.json") -> None:
        self._path = Path(data_root) / "storage" / filename
        self._snapshot: dict[str, str] = self._read()

    @property
    def path(self) -> Path:
        return self._path

    # -- Read ------------------------------------------------------------------

    def get_item(self, key: str) -> str | None:
        return self._read().get(key)

    def keys(self) -> list[str]:
        return list(self._read())

    # -- Write -----------------------------------------------------------------

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key not in data:
            return
        del data[key]
        self._write(data)

    def apply_batch(self, changes: Mapping[str, str | None]) -> None:
        """One read-modify-write for the whole batch."""
        data = self._read()
        for key, value in changes.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._write(data)

    def clear(self) -> None:
        self._write({})

    # -- Change detection ------------------------------------------------------

    def poll_changes(self) -> dict[str, str | None]:
        current = self._read()
        changes: dict[str, str | None] = {}
        for key, value in current.items():
            if self._snapshot.get(key) != value:
                changes[key] = value
        for key in self._snapshot.keys() - current.keys():
            changes[key] = None
        self._snapshot = current
        return changes

    # -- Helpers ---------------------------------------------------------------

    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Storage file {} is corrupt, treating as empty", self._path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: dict[str, str]) -> None:
        _atomic_write(self._path, json.dumps(data, indent=2, sort_keys=True))
        self._snapshot = dict(data)


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    The temp file is created in the same directory so ``os.replace`` is
    atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
