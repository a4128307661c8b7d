"""
Chat persistence over a key/value backend.

Three JSON documents under fixed keys:
  chatHistory   list of ChatRecord, most recent first
  chatMessages  map of chat id -> list of Message
  settings      single Settings object

Every public method is total: failures are logged and reported through the
return value (False, or the caller's fallback), never raised.
Each call reads the whole document, changes it, and writes it back. Two calls
racing on the same document can lose an update; there are no transactions.
"""

from __future__ import annotations

import json
import logging

from thinkline.storage.backends import KeyValueBackend, StorageQuotaError
from thinkline.storage.models import (
    CHAT_PATCH_KEYS,
    MESSAGE_PATCH_KEYS,
    ChatRecord,
    Message,
    Settings,
    utcnow,
)

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "chatHistory": "thinkline_chatHistory",
    "chatMessages": "thinkline_chatMessages",
    "settings": "thinkline_settings",
}

_PROBE_KEY = "__thinkline_probe__"


def _normalize_patch(patch: dict, allowed: dict[str, str]) -> dict:
    """Map snake_case patch keys onto persisted keys, dropping unknown ones."""
    persisted = set(allowed.values())
    out = {}
    for key, value in patch.items():
        if key in allowed:
            out[allowed[key]] = value
        elif key in persisted:
            out[key] = value
        else:
            logger.warning("Ignoring unknown patch field %r", key)
    return out


class ChatStore:
    """Chat history, per-chat messages and settings on one key/value backend."""

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    # ─ Raw documents ──────────────────────────────────────────────────────

    def save(self, collection: str, value) -> bool:
        """Serialize value into collection. On failure the old value stays."""
        key = STORAGE_KEYS.get(collection)
        if key is None:
            logger.error("Unknown collection %r", collection)
            return False
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize %s: %s", collection, e)
            return False
        try:
            self.backend.set(key, payload)
        except StorageQuotaError as e:
            logger.error("Storage quota exceeded saving %s: %s", collection, e)
            return False
        except Exception as e:
            logger.error("Failed to save %s: %s", collection, e)
            return False
        return True

    def load(self, collection: str, fallback=None):
        """Deserialize collection; missing, corrupt or unreadable data gives fallback."""
        key = STORAGE_KEYS.get(collection)
        if key is None:
            logger.error("Unknown collection %r", collection)
            return fallback
        try:
            raw = self.backend.get(key)
        except Exception as e:
            logger.warning("Failed to read %s: %s", collection, e)
            return fallback
        if raw is None:
            return fallback
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Failed to parse stored %s: %s", collection, e)
            return fallback

    # ─ Chat history ───────────────────────────────────────────────────────

    def load_history(self) -> list[ChatRecord]:
        """Chat records, most recent first. Unreadable entries are skipped."""
        raw = self.load("chatHistory", [])
        if not isinstance(raw, list):
            logger.warning("Stored chat history is not a list, ignoring it")
            return []
        history = []
        for entry in raw:
            try:
                history.append(ChatRecord.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping unreadable chat record: %s", e)
        return history

    def save_history(self, history: list[ChatRecord]) -> bool:
        return self.save("chatHistory", [c.to_dict() for c in history])

    def get_chat(self, chat_id: str) -> ChatRecord | None:
        return next((c for c in self.load_history() if c.id == chat_id), None)

    def add_chat(self, chat: ChatRecord) -> bool:
        """Put chat at the front, replacing any entry with the same id."""
        history = [c for c in self.load_history() if c.id != chat.id]
        return self.save_history([chat, *history])

    def update_chat(self, chat_id: str, patch: dict | None = None, **fields) -> bool:
        """Merge fields into the matching record. Unknown ids are a no-op."""
        changes = _normalize_patch({**(patch or {}), **fields}, CHAT_PATCH_KEYS)
        history = self.load_history()
        found = False
        updated = []
        for chat in history:
            if chat.id == chat_id:
                found = True
                merged = {**chat.to_dict(), **changes, "id": chat.id}
                try:
                    chat = ChatRecord.from_dict(merged)
                except (TypeError, ValueError) as e:
                    logger.error("Rejected update to chat %s: %s", chat_id, e)
                    return False
            updated.append(chat)
        if not found:
            logger.debug("update_chat: no chat %s", chat_id)
            return True
        return self.save_history(updated)

    def delete_chat(self, chat_id: str) -> bool:
        """
        Remove the chat and its messages.
        Two independent steps, both always attempted: messages first, then the
        history entry. Returns True only if both succeeded.
        """
        messages_ok = self.delete_messages(chat_id)
        if not messages_ok:
            logger.error("Failed to delete messages of chat %s", chat_id)
        history = self.load_history()
        history_ok = self.save_history([c for c in history if c.id != chat_id])
        if not history_ok:
            logger.error("Failed to remove chat %s from history", chat_id)
        return messages_ok and history_ok

    # ─ Messages ───────────────────────────────────────────────────────────

    def _load_message_map(self) -> dict:
        raw = self.load("chatMessages", {})
        if not isinstance(raw, dict):
            logger.warning("Stored chat messages are not a map, ignoring them")
            return {}
        return raw

    @staticmethod
    def _parse_messages(chat_id: str, raw) -> list[Message]:
        if not isinstance(raw, list):
            logger.warning("Messages of chat %s are not a list, ignoring them", chat_id)
            return []
        messages = []
        for entry in raw:
            try:
                messages.append(Message.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping unreadable message in chat %s: %s", chat_id, e)
        return messages

    def load_all_messages(self) -> dict[str, list[Message]]:
        return {
            chat_id: self._parse_messages(chat_id, raw)
            for chat_id, raw in self._load_message_map().items()
        }

    def load_messages(self, chat_id: str) -> list[Message]:
        """Messages of one chat in conversation order; empty if none."""
        return self._parse_messages(chat_id, self._load_message_map().get(chat_id, []))

    def save_messages(self, chat_id: str, messages: list[Message]) -> bool:
        all_messages = self._load_message_map()
        all_messages[chat_id] = [m.to_dict() for m in messages]
        return self.save("chatMessages", all_messages)

    def add_message(self, chat_id: str, message: Message) -> bool:
        return self.save_messages(chat_id, [*self.load_messages(chat_id), message])

    def update_message(self, chat_id: str, message_id: str, patch: dict | None = None, **fields) -> bool:
        changes = _normalize_patch({**(patch or {}), **fields}, MESSAGE_PATCH_KEYS)
        if "timestamp" in changes and hasattr(changes["timestamp"], "isoformat"):
            changes["timestamp"] = changes["timestamp"].isoformat()
        updated = []
        for message in self.load_messages(chat_id):
            if message.id == message_id:
                try:
                    message = Message.from_dict({**message.to_dict(), **changes})
                except (TypeError, ValueError) as e:
                    logger.error("Rejected update to message %s: %s", message_id, e)
                    return False
            updated.append(message)
        return self.save_messages(chat_id, updated)

    def delete_messages(self, chat_id: str) -> bool:
        all_messages = self._load_message_map()
        if chat_id not in all_messages:
            return True
        del all_messages[chat_id]
        return self.save("chatMessages", all_messages)

    # ─ Settings ───────────────────────────────────────────────────────────

    def load_settings(self) -> Settings:
        """
        Stored settings, or defaults.
        A selected chat id that no longer exists loads as no selection.
        """
        raw = self.load("settings", None)
        if raw is None:
            return Settings()
        try:
            settings = Settings.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Stored settings unreadable, using defaults: %s", e)
            return Settings()
        if settings.selected_chat_id is not None:
            known = {c.id for c in self.load_history()}
            if settings.selected_chat_id not in known:
                logger.info("Selected chat %s no longer exists", settings.selected_chat_id)
                settings.selected_chat_id = None
        return settings

    def save_settings(self, settings: Settings) -> bool:
        return self.save("settings", settings.to_dict())

    def update_setting(self, key: str, value) -> bool:
        keys = {
            "selected_chat_id": "selectedChatId",
            "theme": "theme",
            "last_active_timestamp": "lastActiveTimestamp",
        }
        stored_key = keys.get(key, key)
        if stored_key not in keys.values():
            logger.warning("Ignoring unknown setting %r", key)
            return False
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        data = {**self.load_settings().to_dict(), stored_key: value}
        try:
            settings = Settings.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.error("Rejected setting %s: %s", key, e)
            return False
        return self.save_settings(settings)

    # ─ Whole-store utilities ──────────────────────────────────────────────

    def clear_all(self) -> bool:
        """Remove every collection. Keeps going after a failed removal."""
        ok = True
        for collection, key in STORAGE_KEYS.items():
            try:
                self.backend.remove(key)
            except Exception as e:
                logger.error("Failed to clear %s: %s", collection, e)
                ok = False
        return ok

    def storage_info(self) -> dict:
        """Stored size per collection, in characters."""
        info = {}
        try:
            for collection, key in STORAGE_KEYS.items():
                info[collection] = self.backend.size_of(key)
        except Exception as e:
            logger.error("Failed to get storage info: %s", e)
            return {**{c: 0 for c in STORAGE_KEYS}, "total": 0}
        info["total"] = sum(info.values())
        return info

    def is_available(self) -> bool:
        """Write/remove probe of the backend."""
        try:
            self.backend.set(_PROBE_KEY, _PROBE_KEY)
            self.backend.remove(_PROBE_KEY)
            return True
        except Exception as e:
            logger.warning("Storage backend unavailable: %s", e)
            return False

    def export_data(self, indent: int | None = 2) -> str | None:
        """Every collection in one JSON document, or None on failure."""
        data = {
            "chatHistory": [c.to_dict() for c in self.load_history()],
            "chatMessages": {
                chat_id: [m.to_dict() for m in messages]
                for chat_id, messages in self.load_all_messages().items()
            },
            "settings": self.load_settings().to_dict(),
            "exportTimestamp": utcnow().isoformat(),
        }
        try:
            return json.dumps(data, indent=indent, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error("Failed to export data: %s", e)
            return None

    def import_data(self, document: str) -> bool:
        """
        Restore collections from an export document.
        Each section is validated on its own; a malformed section is skipped
        and the valid ones are still written. A document that is not a JSON
        object fails as a whole.
        """
        try:
            data = json.loads(document)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Failed to import data: %s", e)
            return False
        if not isinstance(data, dict):
            logger.error("Failed to import data: document is not an object")
            return False

        sections = {}
        if "chatHistory" in data:
            try:
                if not isinstance(data["chatHistory"], list):
                    raise TypeError("chatHistory must be a list")
                sections["chatHistory"] = [
                    ChatRecord.from_dict(c).to_dict() for c in data["chatHistory"]
                ]
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed chatHistory section: %s", e)
        if "chatMessages" in data:
            try:
                raw = data["chatMessages"]
                if not isinstance(raw, dict) or not all(isinstance(v, list) for v in raw.values()):
                    raise TypeError("chatMessages must map chat ids to lists")
                sections["chatMessages"] = {
                    str(chat_id): [Message.from_dict(m).to_dict() for m in messages]
                    for chat_id, messages in raw.items()
                }
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed chatMessages section: %s", e)
        if "settings" in data:
            try:
                sections["settings"] = Settings.from_dict(data["settings"]).to_dict()
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed settings section: %s", e)

        ok = True
        for collection, value in sections.items():
            if not self.save(collection, value):
                ok = False
        logger.info("Imported sections: %s", ", ".join(sections) or "none")
        return ok
