"""
Chat persistence: models, key/value backends and the ChatStore on top.
"""

from thinkline.config import StorageConfig
from thinkline.storage.backends import KeyValueBackend, make_backend
from thinkline.storage.chat_store import STORAGE_KEYS, ChatStore
from thinkline.storage.models import ChatRecord, Message, Settings, new_id


def open_store(config: StorageConfig) -> ChatStore:
    """Build a ChatStore on the backend named in config."""
    if config.backend == "memory":
        backend = make_backend("memory", max_bytes=config.max_bytes)
    else:
        backend = make_backend(config.backend, db_path=config.path, max_bytes=config.max_bytes)
    return ChatStore(backend)


__all__ = [
    "STORAGE_KEYS",
    "ChatRecord",
    "ChatStore",
    "KeyValueBackend",
    "Message",
    "Settings",
    "new_id",
    "open_store",
]
