"""In-process dict backend. Used by tests and throwaway sessions."""

from .base import KeyValueBackend


class MemoryBackend(KeyValueBackend):
    """Dict-backed store; contents vanish with the process."""

    def __init__(self, max_bytes: int | None = None):
        super().__init__(max_bytes=max_bytes)
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._check_quota(key, value)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
