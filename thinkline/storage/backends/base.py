"""
KeyValueBackend: abstract base for the persistent substrate under ChatStore.

All backends implement four primitives:
  get      stored string for a key, or None
  set      store a string under a key (may raise StorageQuotaError)
  remove   delete a key (missing keys are fine)
  keys     every stored key

Serialization stays in ChatStore (the caller), not here.
Backends only move strings around.
"""

from abc import ABC, abstractmethod


class StorageQuotaError(Exception):
    """A write would push the substrate past its size limit."""


class KeyValueBackend(ABC):
    """Abstract synchronous, size-bounded, string-keyed store."""

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete key. Removing an absent key is not an error."""
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        """Return all stored keys."""
        ...

    def size_of(self, key: str) -> int:
        """Length in characters of the value under key (0 if absent)."""
        value = self.get(key)
        return len(value) if value is not None else 0

    def usage(self) -> int:
        """Characters in use, counting keys and values."""
        return sum(len(k) + self.size_of(k) for k in self.keys())

    def _check_quota(self, key: str, value: str) -> None:
        """Raise StorageQuotaError if storing value under key would exceed max_bytes."""
        if self.max_bytes is None:
            return
        old = self.get(key)
        freed = len(key) + len(old) if old is not None else 0
        projected = self.usage() - freed + len(key) + len(value)
        if projected > self.max_bytes:
            raise StorageQuotaError(
                f"Writing {len(value)} chars to {key!r} exceeds quota of {self.max_bytes}"
            )
