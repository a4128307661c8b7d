"""
Data models for chat storage.
These define the shape of data flowing between the session controller and
the store. Persisted form uses the camelCase keys of the export document.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

ROLES = ("user", "assistant")
THEMES = ("auto", "light", "dark")

_id_lock = threading.Lock()
_last_id = 0


def new_id() -> str:
    """
    Creation-time id: milliseconds since the epoch, bumped by one when two ids
    land in the same millisecond, so ids stay unique and strictly increasing.
    """
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
    return str(candidate)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value) -> datetime | None:
    """Turn a stored timestamp (ISO string or epoch millis) back into a datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@dataclass
class Message:
    """A single message in a chat. Content is the answer only, never reasoning."""
    role: str                # "user" or "assistant"
    content: str = ""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    is_error: bool = False

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.is_error:
            data["isError"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """
        Rebuild a message from its stored form.
        A missing or unreadable timestamp becomes the current instant.
        Raises ValueError/TypeError on records that are not messages.
        """
        if not isinstance(data, dict):
            raise TypeError(f"message must be an object, got {type(data).__name__}")
        role = data.get("role")
        if role not in ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        if data.get("id") in (None, ""):
            raise ValueError("message has no id")
        content = data.get("content", "")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(
            id=str(data["id"]),
            role=role,
            content=content,
            timestamp=parse_instant(data.get("timestamp")) or utcnow(),
            is_error=bool(data.get("isError", False)),
        )

    def to_chat_format(self) -> dict:
        """The {role, content} pair sent to the model server."""
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRecord:
    """Metadata for one conversation; its messages live in a separate list."""
    id: str = field(default_factory=new_id)
    title: str = ""
    timestamp_label: str = ""
    preview: str = ""
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    last_message_at: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "timestampLabel": self.timestamp_label,
            "preview": self.preview,
            "createdAt": self.created_at,
        }
        if self.last_message_at is not None:
            data["lastMessageAt"] = self.last_message_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ChatRecord":
        if not isinstance(data, dict):
            raise TypeError(f"chat record must be an object, got {type(data).__name__}")
        if data.get("id") in (None, ""):
            raise ValueError("chat record has no id")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            timestamp_label=str(data.get("timestampLabel", "")),
            preview=str(data.get("preview", "")),
            created_at=str(data.get("createdAt") or utcnow().isoformat()),
            last_message_at=data.get("lastMessageAt"),
        )


# Patch keys accepted by ChatStore.update_chat, snake_case -> persisted key.
CHAT_PATCH_KEYS = {
    "title": "title",
    "timestamp_label": "timestampLabel",
    "preview": "preview",
    "last_message_at": "lastMessageAt",
    "created_at": "createdAt",
}

MESSAGE_PATCH_KEYS = {
    "content": "content",
    "is_error": "isError",
    "timestamp": "timestamp",
}


@dataclass
class Settings:
    """Process-wide app settings, one per installation."""
    selected_chat_id: str | None = None
    theme: str = "auto"
    last_active_timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "selectedChatId": self.selected_chat_id,
            "theme": self.theme,
            "lastActiveTimestamp": self.last_active_timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        if not isinstance(data, dict):
            raise TypeError(f"settings must be an object, got {type(data).__name__}")
        selected = data.get("selectedChatId")
        theme = data.get("theme", "auto")
        return cls(
            selected_chat_id=str(selected) if selected not in (None, "") else None,
            theme=theme if theme in THEMES else "auto",
            last_active_timestamp=parse_instant(data.get("lastActiveTimestamp")) or utcnow(),
        )
