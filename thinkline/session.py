"""
Chat session controller.

One ChatSession drives one conversation, one completion at a time:

    IDLE -> SENDING -> STREAMING -> SETTLED -> IDLE

Errors and cancellation from SENDING or STREAMING settle too.

While streaming, every chunk re-runs the segmenter over the accumulated text
and publishes the answer and thinking parts on separate callbacks. On settle
the answer (never the reasoning) is written to the store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from thinkline.backends.base import ModelBackend
from thinkline.errors import ThinklineError
from thinkline.segmenter import DEFAULT_RULES, HeuristicRules, Segments, finalize_segments, segment_output
from thinkline.storage.chat_store import ChatStore
from thinkline.storage.models import ChatRecord, Message, new_id, utcnow

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
PREVIEW_LENGTH = 100


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    SETTLED = "settled"


class SendStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass
class SendOutcome:
    """What a send() came to. Only ERROR is a user-visible failure."""
    status: SendStatus
    chat_id: str | None = None
    answer: str = ""
    thinking: str = ""
    error: str = ""
    assistant_message: Message | None = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.SUCCESS


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


class ChatSession:
    """
    Controller for one conversation.

    on_answer / on_thinking receive the current answer and thinking text
    after every chunk. on_storage_error receives a short message whenever a
    store write fails; the completion itself carries on.
    """

    def __init__(
        self,
        client: ModelBackend,
        store: ChatStore,
        *,
        chat_id: str | None = None,
        model: str | None = None,
        params: dict | None = None,
        rules: HeuristicRules = DEFAULT_RULES,
        on_answer: Callable[[str], None] | None = None,
        on_thinking: Callable[[str], None] | None = None,
        on_storage_error: Callable[[str], None] | None = None,
        surface_cancellation: bool = False,
    ):
        self.client = client
        self.store = store
        self.chat_id = chat_id
        self.model = model
        self.params = params
        self.rules = rules
        self.on_answer = on_answer
        self.on_thinking = on_thinking
        self.on_storage_error = on_storage_error
        self.surface_cancellation = surface_cancellation

        self.state = SessionState.IDLE
        self.last_outcome: SendOutcome | None = None
        self.storage_error: str | None = None
        self.live_answer = ""
        self.live_thinking = ""
        self._task: asyncio.Task | None = None
        self._cancel_requested = False

    @classmethod
    def restore(cls, client: ModelBackend, store: ChatStore, **kwargs) -> "ChatSession":
        """Resume the chat selected in settings, if it still exists."""
        settings = store.load_settings()
        return cls(client, store, chat_id=settings.selected_chat_id, **kwargs)

    @property
    def busy(self) -> bool:
        return self.state in (SessionState.SENDING, SessionState.STREAMING)

    # ─ Chat selection ─────────────────────────────────────────────────────

    def open_chat(self, chat_id: str | None) -> list[Message]:
        """Switch to another chat (None for a fresh one) and return its messages."""
        self.chat_id = chat_id
        self._persist(self.store.update_setting("selected_chat_id", chat_id), "remember the selected chat")
        return self.store.load_messages(chat_id) if chat_id else []

    def messages(self) -> list[Message]:
        return self.store.load_messages(self.chat_id) if self.chat_id else []

    def delete_chat(self, chat_id: str) -> bool:
        ok = self._persist(self.store.delete_chat(chat_id), "delete the chat")
        if chat_id == self.chat_id:
            self.chat_id = None
        return ok

    # ─ Sending ────────────────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Stop the in-flight completion. Returns False if nothing was running."""
        if not self.busy or self._task is None:
            return False
        self._cancel_requested = True
        self._task.cancel()
        return True

    def acknowledge(self) -> SendOutcome | None:
        """Consume the settled result and return to IDLE."""
        if self.state == SessionState.SETTLED:
            self.state = SessionState.IDLE
        return self.last_outcome

    async def send(self, text: str) -> SendOutcome:
        """
        Send a user message and stream the reply.

        Rejected while another send is in flight. A settled previous result
        is acknowledged implicitly.
        """
        if self.busy:
            logger.warning("Send rejected: chat %s already has a reply in flight", self.chat_id)
            return SendOutcome(
                SendStatus.REJECTED, chat_id=self.chat_id, error="A reply is already in progress"
            )

        self.state = SessionState.SENDING
        self._task = asyncio.current_task()
        self._cancel_requested = False
        self.storage_error = None
        self.live_answer = self.live_thinking = ""

        chat_id = self._ensure_chat(text)
        user_message = Message(role="user", content=text)
        self._persist(self.store.add_message(chat_id, user_message), "save your message")

        accumulated = ""
        try:
            history = [
                m.to_chat_format()
                for m in self.store.load_messages(chat_id)
                if not m.is_error and m.id != user_message.id
            ]
            history.append(user_message.to_chat_format())

            stream = await self.client.chat_completion(history, model=self.model, params=self.params)
            self.state = SessionState.STREAMING
            async with stream:
                async for chunk in stream:
                    accumulated += chunk.fragment
                    self._publish(segment_output(accumulated, self.rules))
                    if chunk.is_final:
                        break
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            asyncio.current_task().uncancel()
            return self._settle_cancelled(chat_id, accumulated)
        except ThinklineError as e:
            return self._settle_error(chat_id, e)
        finally:
            self._task = None
            if self.busy:
                self.state = SessionState.SETTLED

        return self._settle_success(chat_id, accumulated)

    # ─ Internals ──────────────────────────────────────────────────────────

    def _ensure_chat(self, text: str) -> str:
        if self.chat_id and self.store.get_chat(self.chat_id) is not None:
            return self.chat_id
        chat = ChatRecord(
            id=self.chat_id or new_id(),
            title=_clip(text, TITLE_LENGTH),
            timestamp_label="Just now",
        )
        self.chat_id = chat.id
        self._persist(self.store.add_chat(chat), "create the chat")
        self._persist(self.store.update_setting("selected_chat_id", chat.id), "remember the selected chat")
        logger.info("Started chat %s", chat.id)
        return chat.id

    def _publish(self, segments: Segments):
        self.live_thinking = segments.thinking
        self.live_answer = segments.answer
        if self.on_thinking:
            self.on_thinking(segments.thinking)
        if self.on_answer:
            self.on_answer(segments.answer)

    def _persist(self, ok: bool, what: str) -> bool:
        if not ok:
            self.storage_error = f"Could not {what}: storage is unavailable or full"
            logger.warning("Storage failure in chat %s: %s", self.chat_id, self.storage_error)
            if self.on_storage_error:
                self.on_storage_error(self.storage_error)
        return ok

    def _settle(self, outcome: SendOutcome) -> SendOutcome:
        self.state = SessionState.SETTLED
        self.last_outcome = outcome
        logger.info("Chat %s settled: %s", outcome.chat_id, outcome.status.value)
        return outcome

    def _settle_success(self, chat_id: str, text: str) -> SendOutcome:
        final = finalize_segments(text, self.rules)
        self._publish(final)
        reply = Message(role="assistant", content=final.answer)
        self._persist(self.store.add_message(chat_id, reply), "save the reply")
        self._persist(
            self.store.update_chat(
                chat_id,
                preview=_clip(final.answer, PREVIEW_LENGTH),
                timestamp_label="Just now",
                last_message_at=reply.timestamp.isoformat(),
            ),
            "update the chat list",
        )
        self.store.update_setting("last_active_timestamp", utcnow())
        return self._settle(SendOutcome(
            SendStatus.SUCCESS,
            chat_id=chat_id,
            answer=final.answer,
            thinking=final.thinking,
            assistant_message=reply,
        ))

    def _settle_error(self, chat_id: str, error: ThinklineError) -> SendOutcome:
        logger.error("Completion failed in chat %s: %s", chat_id, error)
        reply = Message(role="assistant", content=f"Error: {error}", is_error=True)
        self._persist(self.store.add_message(chat_id, reply), "save the error message")
        return self._settle(SendOutcome(
            SendStatus.ERROR,
            chat_id=chat_id,
            error=str(error),
            assistant_message=reply,
        ))

    def _settle_cancelled(self, chat_id: str, text: str) -> SendOutcome:
        partial = segment_output(text, self.rules)
        reply = None
        if self.surface_cancellation:
            reply = Message(role="assistant", content="Response cancelled.", is_error=True)
            self._persist(self.store.add_message(chat_id, reply), "save the cancellation notice")
        return self._settle(SendOutcome(
            SendStatus.CANCELLED,
            chat_id=chat_id,
            answer=partial.answer,
            thinking=partial.thinking,
            assistant_message=reply,
        ))
