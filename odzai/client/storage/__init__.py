"""Key-value persistence for the client core."""

from odzai.client.storage.base import KeyValueBackend, ObservableBackend
from odzai.client.storage.facade import PendingWrite, Storage
from odzai.client.storage.local import LocalFileBackend
from odzai.client.storage.memory import MemoryBackend

__all__ = [
    "KeyValueBackend",
    "LocalFileBackend",
    "MemoryBackend",
    "ObservableBackend",
    "PendingWrite",
    "Storage",
]
