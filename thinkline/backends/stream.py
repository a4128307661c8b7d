"""
NDJSON stream decoding.

The server streams one JSON object per line, but the transport hands us
arbitrary chunks: a chunk may hold several lines, none, or half of one.
NDJSONDecoder does the re-framing; RecordStream and CompletionStream wrap it
as async cursors over a live channel.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections import deque
from typing import AsyncIterable, Awaitable, Callable

from thinkline.backends.base import StreamChunk
from thinkline.errors import StreamReadError

logger = logging.getLogger(__name__)


class NDJSONDecoder:
    """Incremental line splitter + JSON decoder. Pure, no I/O."""

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[dict]:
        """Add a chunk, return every record completed by it."""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        records = []
        for line in lines:
            record = self._decode_line(line)
            if record is not None:
                records.append(record)
        return records

    def close(self) -> None:
        """End of input. An unterminated trailing line is discarded."""
        if self._buffer.strip():
            logger.debug("Discarding unterminated line: %r", self._buffer[:200])
        self._buffer = ""

    @staticmethod
    def _decode_line(line: str) -> dict | None:
        line = line.strip()
        if not line:
            return None
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping invalid JSON line: %r", line[:200])
            return None
        if not isinstance(record, dict):
            logger.debug("Dropping non-object line: %r", line[:200])
            return None
        return record


class RecordStream:
    """
    Async cursor over the records of an NDJSON channel.

    Finite and single pass: once exhausted or closed it only raises
    StopAsyncIteration. on_close (typically the HTTP response's aclose) runs
    exactly once, whether the stream ends, fails or is closed early.
    """

    def __init__(
        self,
        channel: AsyncIterable[bytes | str],
        on_close: Callable[[], Awaitable[None]] | None = None,
    ):
        self._channel = channel.__aiter__()
        self._on_close = on_close
        self._decoder = NDJSONDecoder()
        self._pending: deque[dict] = deque()
        self._exhausted = False
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        while not self._pending:
            if self._exhausted:
                raise StopAsyncIteration
            try:
                chunk = await self._channel.__anext__()
            except StopAsyncIteration:
                self._decoder.close()
                await self.aclose()
                raise
            except asyncio.CancelledError:
                await self.aclose()
                raise
            except Exception as e:
                await self.aclose()
                raise StreamReadError(f"Stream read failed: {e}") from e
            self._pending.extend(self._decoder.feed(chunk))
        return self._pending.popleft()

    async def aclose(self) -> None:
        """Release the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._exhausted = True
        self._pending.clear()
        try:
            channel_close = getattr(self._channel, "aclose", None)
            if channel_close is not None:
                await channel_close()
        finally:
            if self._on_close is not None:
                await self._on_close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()
        return False


class CompletionStream:
    """
    Async cursor of StreamChunk over a completion's record stream.

    extract maps one record to a chunk, or None for records carrying nothing.
    A record with an "error" key is a server-side failure mid-stream.
    Iteration stops after the final (done) chunk.
    """

    def __init__(
        self,
        records: RecordStream,
        extract: Callable[[dict], StreamChunk | None],
        model: str = "",
    ):
        self._records = records
        self._extract = extract
        self.model = model
        self._finished = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished:
            raise StopAsyncIteration
        async for record in self._records:
            if "error" in record:
                await self.aclose()
                raise StreamReadError(f"Server error in stream: {record['error']}")
            chunk = self._extract(record)
            if chunk is None:
                continue
            if chunk.is_final:
                await self.aclose()
            return chunk
        self._finished = True
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self._finished = True
        await self._records.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()
        return False
