"""
Model server clients.

Usage:
    from thinkline.backends import OllamaClient
    async with OllamaClient(ClientConfig.from_config(cfg)) as client:
        stream = await client.chat_completion([{"role": "user", "content": "hi"}])
"""

from .base import (
    Completion,
    ConnectionResult,
    ModelBackend,
    ModelInfo,
    PullProgress,
    PullResult,
    StreamChunk,
)
from .ollama import OllamaClient
from .stream import CompletionStream, NDJSONDecoder, RecordStream

__all__ = [
    "Completion",
    "CompletionStream",
    "ConnectionResult",
    "ModelBackend",
    "ModelInfo",
    "NDJSONDecoder",
    "OllamaClient",
    "PullProgress",
    "PullResult",
    "RecordStream",
    "StreamChunk",
]
