"""
Base model-server abstraction.
Result types are explicit per endpoint, so missing or malformed fields are
caught where the response is parsed rather than deep in the caller.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Callable

from thinkline.errors import ThinklineError

logger = logging.getLogger(__name__)


@dataclass
class ModelInfo:
    """One entry of the server's model catalog."""
    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""
    details: dict = field(default_factory=dict)

    @classmethod
    def from_record(cls, record) -> "ModelInfo | None":
        if not isinstance(record, dict):
            return None
        name = record.get("name") or record.get("model")
        if not isinstance(name, str) or not name:
            return None
        size = record.get("size", 0)
        return cls(
            name=name,
            size=size if isinstance(size, int) else 0,
            digest=str(record.get("digest", "")),
            modified_at=str(record.get("modified_at", "")),
            details=record.get("details") if isinstance(record.get("details"), dict) else {},
        )


@dataclass
class ConnectionResult:
    """Liveness probe outcome: reachable with a catalog, or not with a reason."""
    reachable: bool
    models: list[ModelInfo] = field(default_factory=list)
    reason: str = ""


@dataclass
class PullProgress:
    """One progress record of a model pull."""
    status: str
    digest: str = ""
    total: int = 0
    completed: int = 0

    @property
    def percent(self) -> float | None:
        if self.total > 0:
            return min(100.0, self.completed / self.total * 100)
        return None

    @classmethod
    def from_record(cls, record: dict) -> "PullProgress | None":
        """None for records that are not progress updates."""
        status = record.get("status")
        if not isinstance(status, str):
            return None
        total = record.get("total", 0)
        completed = record.get("completed", 0)
        return cls(
            status=status,
            digest=str(record.get("digest", "")),
            total=total if isinstance(total, int) else 0,
            completed=completed if isinstance(completed, int) else 0,
        )


@dataclass
class PullResult:
    ok: bool
    model: str
    error: str = ""


@dataclass
class StreamChunk:
    """One decoded piece of a streaming completion. Never persisted."""
    fragment: str
    is_final: bool = False
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class Completion:
    """A whole (non-streaming) completion."""
    content: str
    role: str = "assistant"
    model: str = ""
    created_at: str = ""
    done: bool = True
    raw: dict = field(default_factory=dict, repr=False)


class ModelBackend(abc.ABC):
    """
    Abstract LLM server client.
    The session controller only talks to this interface.
    """

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionResult:
        """Short liveness probe. Never raises."""
        ...

    @abc.abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Fetch the model catalog."""
        ...

    @abc.abstractmethod
    async def pull_model(
        self, name: str, on_progress: Callable[[PullProgress], None] | None = None
    ) -> PullResult:
        """Download a model, reporting progress records as they arrive."""
        ...

    @abc.abstractmethod
    async def chat_completion(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        params: dict | None = None,
        stream: bool = True,
    ):
        """Chat request. Returns a CompletionStream, or a Completion when stream=False."""
        ...

    @abc.abstractmethod
    async def generate_completion(
        self,
        prompt: str,
        *,
        model: str | None = None,
        params: dict | None = None,
        stream: bool = True,
    ):
        """Single-prompt request, same streaming duality as chat_completion."""
        ...

    @abc.abstractmethod
    async def get_model_info(self, name: str) -> dict:
        """Model metadata."""
        ...

    async def is_model_available(self, name: str) -> bool:
        """Membership test over list_models(). A failed listing counts as absent."""
        try:
            models = await self.list_models()
        except ThinklineError as e:
            logger.warning("Error checking availability of %s: %s", name, e)
            return False
        return any(m.name == name for m in models)

    async def aclose(self) -> None:
        """Release connections. Default: nothing to release."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()
        return False
