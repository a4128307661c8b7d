"""
Tests for NDJSON stream decoding.
Run with: pytest tests/test_stream.py
"""

import asyncio

import pytest

from thinkline.backends.base import StreamChunk
from thinkline.backends.stream import CompletionStream, NDJSONDecoder, RecordStream
from thinkline.errors import StreamReadError


async def _chunks(*parts):
    for part in parts:
        yield part


def _chat_chunk(record):
    content = record.get("message", {}).get("content", "")
    done = record.get("done", False)
    if not content and not done:
        return None
    return StreamChunk(fragment=content, is_final=done, raw=record)


# ---------------------------------------------------------------------------
# NDJSONDecoder
# ---------------------------------------------------------------------------

def test_decoder_record_split_across_chunks():
    """A record cut in two is emitted once its newline arrives."""
    d = NDJSONDecoder()
    first = d.feed('{"a":1}\n{"b":2')
    second = d.feed("}\n")
    assert first == [{"a": 1}]
    assert second == [{"b": 2}]


@pytest.mark.parametrize("split", range(1, len('{"a":1}\n{"b":2}\n')))
def test_decoder_split_point_does_not_matter(split):
    """Any two-way split of the same bytes yields the same two records."""
    payload = '{"a":1}\n{"b":2}\n'
    d = NDJSONDecoder()
    records = d.feed(payload[:split]) + d.feed(payload[split:])
    assert records == [{"a": 1}, {"b": 2}]


def test_decoder_skips_invalid_lines():
    """Garbage between valid lines is dropped without raising."""
    d = NDJSONDecoder()
    records = d.feed('{"a":1}\nnot json\n{"b":2}\n')
    assert records == [{"a": 1}, {"b": 2}]


def test_decoder_skips_blank_and_non_object_lines():
    d = NDJSONDecoder()
    assert d.feed('\n   \n[1,2]\n"str"\n{"ok":true}\n') == [{"ok": True}]


def test_decoder_multibyte_char_split_across_chunks():
    """UTF-8 sequences cut between chunks decode correctly."""
    data = '{"text":"héllo"}\n'.encode("utf-8")
    cut = data.index("é".encode("utf-8")) + 1
    d = NDJSONDecoder()
    records = d.feed(data[:cut]) + d.feed(data[cut:])
    assert records == [{"text": "héllo"}]


def test_decoder_close_discards_partial_line():
    d = NDJSONDecoder()
    assert d.feed('{"a":1}\n{"b":') == [{"a": 1}]
    d.close()
    assert d.feed("2}\n") == []


def test_decoder_crlf_lines():
    d = NDJSONDecoder()
    assert d.feed('{"a":1}\r\n{"b":2}\r\n') == [{"a": 1}, {"b": 2}]


# ---------------------------------------------------------------------------
# RecordStream
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_record_stream_yields_records_in_order():
    stream = RecordStream(_chunks(b'{"n":1}\n{"n"', b':2}\n{"n":3}\n'))
    records = [r async for r in stream]
    assert [r["n"] for r in records] == [1, 2, 3]
    assert stream.closed


@pytest.mark.asyncio
async def test_record_stream_on_close_runs_once():
    """on_close runs once whether the stream ends or is closed again."""
    calls = []

    async def on_close():
        calls.append(1)

    stream = RecordStream(_chunks(b'{"n":1}\n'), on_close=on_close)
    assert [r async for r in stream] == [{"n": 1}]
    await stream.aclose()
    await stream.aclose()
    assert calls == [1]


@pytest.mark.asyncio
async def test_record_stream_exhausted_stays_exhausted():
    stream = RecordStream(_chunks(b'{"n":1}\n'))
    assert [r async for r in stream] == [{"n": 1}]
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_record_stream_channel_failure_becomes_stream_read_error():
    calls = []

    async def broken():
        yield b'{"n":1}\n'
        raise ConnectionResetError("peer went away")

    async def on_close():
        calls.append(1)

    stream = RecordStream(broken(), on_close=on_close)
    assert await stream.__anext__() == {"n": 1}
    with pytest.raises(StreamReadError):
        await stream.__anext__()
    assert calls == [1]


@pytest.mark.asyncio
async def test_record_stream_context_manager_closes_early():
    calls = []

    async def on_close():
        calls.append(1)

    async with RecordStream(_chunks(b'{"n":1}\n{"n":2}\n'), on_close=on_close) as stream:
        assert await stream.__anext__() == {"n": 1}
    assert stream.closed
    assert calls == [1]


@pytest.mark.asyncio
async def test_record_stream_cancelled_read_releases_channel():
    calls = []
    gate = asyncio.Event()

    async def slow():
        yield b'{"n":1}\n'
        await gate.wait()
        yield b'{"n":2}\n'

    async def on_close():
        calls.append(1)

    stream = RecordStream(slow(), on_close=on_close)

    async def consume():
        return [r async for r in stream]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert stream.closed
    assert calls == [1]


# ---------------------------------------------------------------------------
# CompletionStream
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_completion_stream_stops_after_final_chunk():
    """Records after done:true are never read."""
    body = (
        b'{"message":{"content":"Hel"},"done":false}\n'
        b'{"message":{"content":"lo"},"done":false}\n'
        b'{"message":{"content":""},"done":true}\n'
        b'{"message":{"content":"ignored"},"done":false}\n'
    )
    stream = CompletionStream(RecordStream(_chunks(body)), _chat_chunk, model="m")
    chunks = [c async for c in stream]
    assert [c.fragment for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].is_final
    assert not chunks[0].is_final


@pytest.mark.asyncio
async def test_completion_stream_skips_empty_records():
    body = b'{"message":{"content":""},"done":false}\n{"message":{"content":"x"},"done":true}\n'
    stream = CompletionStream(RecordStream(_chunks(body)), _chat_chunk)
    assert [c.fragment async for c in stream] == ["x"]


@pytest.mark.asyncio
async def test_completion_stream_server_error_record_raises():
    body = b'{"message":{"content":"a"},"done":false}\n{"error":"model crashed"}\n'
    stream = CompletionStream(RecordStream(_chunks(body)), _chat_chunk)
    assert (await stream.__anext__()).fragment == "a"
    with pytest.raises(StreamReadError, match="model crashed"):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_completion_stream_ends_without_done_record():
    body = b'{"message":{"content":"a"},"done":false}\n'
    stream = CompletionStream(RecordStream(_chunks(body)), _chat_chunk)
    assert [c.fragment async for c in stream] == ["a"]
