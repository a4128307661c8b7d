"""
Key/value backend factory.

Usage:
    from thinkline.storage.backends import make_backend
    backend = make_backend("sqlite", db_path="./data/thinkline.db")

Adding a new backend:
    1. Create thinkline/storage/backends/<name>.py implementing KeyValueBackend.
    2. Add an entry to _REGISTRY below.
    3. Set  storage.backend: <name>  in config.yaml.
"""

from .base import KeyValueBackend, StorageQuotaError
from .memory import MemoryBackend
from .sqlite import SQLiteBackend

_REGISTRY: dict[str, type[KeyValueBackend]] = {
    "sqlite": SQLiteBackend,
    "memory": MemoryBackend,
}


def make_backend(backend_type: str, **kwargs) -> KeyValueBackend:
    """
    Instantiate a key/value backend by name.

    Args:
        backend_type: Registry key ("sqlite" or "memory").
        **kwargs:     Passed directly to the backend constructor.

    Raises:
        ValueError: If the backend type is not registered.
    """
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown storage backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = [
    "KeyValueBackend",
    "MemoryBackend",
    "SQLiteBackend",
    "StorageQuotaError",
    "make_backend",
]
