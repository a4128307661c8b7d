"""
Tests for the Ollama client.
The HTTP layer is an httpx.MockTransport; no server needed.
"""

import asyncio
import json

import httpx
import pytest

from thinkline.backends.base import ModelBackend
from thinkline.backends.ollama import SYSTEM_PROMPT, OllamaClient, with_system_prompt
from thinkline.config import ClientConfig
from thinkline.errors import (
    MalformedResponseError,
    ModelInfoError,
    ModelListError,
    ModelUnavailableError,
    RequestTimeoutError,
    ServerStatusError,
    ServerUnreachableError,
    StreamReadError,
)

TAGS = {"models": [{"name": "qwen3:14b", "size": 9_000_000_000}, {"name": "llama3:8b"}]}


def _ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


def make_client(handler, **config) -> OllamaClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaClient(ClientConfig(base_url="http://fake:11434", **config), http=http)


class Recorder:
    """MockTransport handler that routes by path and keeps every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.routes[request.url.path](request)

    def bodies(self, path):
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


def tags_ok(request):
    return httpx.Response(200, json=TAGS)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

def test_with_system_prompt_prepends_instruction():
    out = with_system_prompt([{"role": "user", "content": "hi"}])
    assert out[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert len(out) == 2
    assert "<think>" in SYSTEM_PROMPT and "<answer>" in SYSTEM_PROMPT


def test_with_system_prompt_leaves_caller_system_message():
    messages = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]
    assert with_system_prompt(messages) == messages


# ---------------------------------------------------------------------------
# Connection and catalog
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connection_ok():
    client = make_client(tags_ok)
    result = await client.test_connection()
    assert result.reachable
    assert [m.name for m in result.models] == ["qwen3:14b", "llama3:8b"]


@pytest.mark.asyncio
async def test_connection_http_error_is_not_raised():
    client = make_client(lambda r: httpx.Response(500, text="boom"))
    result = await client.test_connection()
    assert not result.reachable
    assert "500" in result.reason


@pytest.mark.asyncio
async def test_connection_refused_is_not_raised():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await make_client(refuse).test_connection()
    assert not result.reachable
    assert "connection refused" in result.reason


@pytest.mark.asyncio
async def test_list_models_parses_catalog_and_skips_nameless():
    client = make_client(lambda r: httpx.Response(200, json={"models": [{"name": "a"}, {"size": 3}]}))
    models = await client.list_models()
    assert [m.name for m in models] == ["a"]


@pytest.mark.asyncio
async def test_list_models_error_status():
    client = make_client(lambda r: httpx.Response(404))
    with pytest.raises(ModelListError) as exc:
        await client.list_models()
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_list_models_malformed_body():
    client = make_client(lambda r: httpx.Response(200, text="<html>"))
    with pytest.raises(MalformedResponseError):
        await client.list_models()


@pytest.mark.asyncio
async def test_list_models_timeout():
    def slow(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(RequestTimeoutError):
        await make_client(slow).list_models()


@pytest.mark.asyncio
async def test_is_model_available():
    client = make_client(tags_ok)
    assert await client.is_model_available("qwen3:14b")
    assert not await client.is_model_available("mistral")


@pytest.mark.asyncio
async def test_is_model_available_false_when_listing_fails():
    client = make_client(lambda r: httpx.Response(500))
    assert not await client.is_model_available("qwen3:14b")


@pytest.mark.asyncio
async def test_get_model_info():
    rec = Recorder({"/api/show": lambda r: httpx.Response(200, json={"modelfile": "FROM x"})})
    client = make_client(rec)
    assert await client.get_model_info("qwen3:14b") == {"modelfile": "FROM x"}
    assert rec.bodies("/api/show") == [{"name": "qwen3:14b"}]


@pytest.mark.asyncio
async def test_get_model_info_error():
    client = make_client(lambda r: httpx.Response(404, json={"error": "not found"}))
    with pytest.raises(ModelInfoError):
        await client.get_model_info("nope")


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pull_reports_progress_records():
    body = _ndjson(
        {"status": "pulling manifest"},
        {"status": "downloading", "digest": "sha256:1", "total": 200, "completed": 50},
        {"unexpected": True},
        {"status": "success"},
    )
    client = make_client(lambda r: httpx.Response(200, content=body))
    seen = []
    result = await client.pull_model("qwen3:14b", on_progress=seen.append)
    assert result.ok
    assert [p.status for p in seen] == ["pulling manifest", "downloading", "success"]
    assert seen[1].percent == 25.0
    assert seen[0].percent is None


@pytest.mark.asyncio
async def test_pull_server_error_record():
    body = _ndjson({"status": "pulling manifest"}, {"error": "pull model manifest: file does not exist"})
    result = await make_client(lambda r: httpx.Response(200, content=body)).pull_model("ghost")
    assert not result.ok
    assert "does not exist" in result.error


@pytest.mark.asyncio
async def test_pull_unreachable_returns_failure():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    result = await make_client(refuse).pull_model("qwen3:14b")
    assert not result.ok
    assert result.model == "qwen3:14b"


# ---------------------------------------------------------------------------
# Chat completion
# ---------------------------------------------------------------------------

def chat_stream(*fragments):
    records = [{"message": {"role": "assistant", "content": f}, "done": False} for f in fragments]
    records.append({"message": {"role": "assistant", "content": ""}, "done": True})
    return lambda request: httpx.Response(200, content=_ndjson(*records))


@pytest.mark.asyncio
async def test_chat_completion_streams_fragments():
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": chat_stream("<think>hm", "</think>", "<answer>4</answer>")})
    client = make_client(rec)
    stream = await client.chat_completion([{"role": "user", "content": "2+2?"}])
    chunks = [c async for c in stream]
    assert "".join(c.fragment for c in chunks) == "<think>hm</think><answer>4</answer>"
    assert chunks[-1].is_final


@pytest.mark.asyncio
async def test_chat_completion_injects_system_prompt_and_params():
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": chat_stream("x")})
    client = make_client(rec)
    stream = await client.chat_completion(
        [{"role": "user", "content": "hi"}], params={"temperature": 0.1}
    )
    async with stream:
        pass
    body = rec.bodies("/api/chat")[0]
    assert body["model"] == "qwen3:14b"
    assert body["stream"] is True
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][1] == {"role": "user", "content": "hi"}
    assert body["options"]["temperature"] == 0.1
    assert body["options"]["top_p"] == 0.85            # per-model default
    assert body["options"]["top_k"] == 40              # global default


@pytest.mark.asyncio
async def test_chat_completion_keeps_caller_system_message():
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": chat_stream("x")})
    messages = [{"role": "system", "content": "Answer in French."}, {"role": "user", "content": "hi"}]
    stream = await make_client(rec).chat_completion(messages)
    await stream.aclose()
    sent = rec.bodies("/api/chat")[0]["messages"]
    assert sent == messages


@pytest.mark.asyncio
async def test_chat_completion_model_unavailable():
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": chat_stream("x")})
    with pytest.raises(ModelUnavailableError, match="mistral is not available"):
        await make_client(rec).chat_completion([{"role": "user", "content": "hi"}], model="mistral")
    assert rec.bodies("/api/chat") == []


@pytest.mark.asyncio
async def test_chat_completion_unreachable_is_not_model_unavailable():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ServerUnreachableError):
        await make_client(refuse).chat_completion([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_chat_completion_error_status_carries_server_detail():
    rec = Recorder({
        "/api/tags": tags_ok,
        "/api/chat": lambda r: httpx.Response(500, json={"error": "out of memory"}),
    })
    with pytest.raises(ServerStatusError, match="out of memory") as exc:
        await make_client(rec).chat_completion([{"role": "user", "content": "hi"}])
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_chat_completion_non_streaming():
    def chat(request):
        return httpx.Response(200, json={
            "model": "qwen3:14b",
            "created_at": "2024-01-01T00:00:00Z",
            "message": {"role": "assistant", "content": "<answer>hi</answer>"},
            "done": True,
        })

    rec = Recorder({"/api/tags": tags_ok, "/api/chat": chat})
    completion = await make_client(rec).chat_completion([{"role": "user", "content": "hi"}], stream=False)
    assert completion.content == "<answer>hi</answer>"
    assert completion.role == "assistant"
    assert completion.done
    assert rec.bodies("/api/chat")[0]["stream"] is False


@pytest.mark.asyncio
async def test_chat_completion_non_streaming_without_content():
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": lambda r: httpx.Response(200, json={"done": True})})
    with pytest.raises(MalformedResponseError):
        await make_client(rec).chat_completion([{"role": "user", "content": "hi"}], stream=False)


@pytest.mark.asyncio
async def test_chat_stream_server_error_mid_stream():
    body = _ndjson({"message": {"content": "par"}, "done": False}, {"error": "model runner crashed"})
    rec = Recorder({"/api/tags": tags_ok, "/api/chat": lambda r: httpx.Response(200, content=body)})
    stream = await make_client(rec).chat_completion([{"role": "user", "content": "hi"}])
    with pytest.raises(StreamReadError):
        async for _ in stream:
            pass


@pytest.mark.asyncio
async def test_chat_stream_chunked_delivery():
    """Records split across transport chunks still come out whole."""
    payload = _ndjson(
        {"message": {"content": "Hello, "}, "done": False},
        {"message": {"content": "world"}, "done": False},
        {"message": {"content": ""}, "done": True},
    )

    async def dribble():
        for i in range(0, len(payload), 7):
            yield payload[i:i + 7]
            await asyncio.sleep(0)

    rec = Recorder({"/api/tags": tags_ok, "/api/chat": lambda r: httpx.Response(200, content=dribble())})
    stream = await make_client(rec).chat_completion([{"role": "user", "content": "hi"}])
    assert "".join([c.fragment async for c in stream]) == "Hello, world"


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_completion_streams_without_system_prompt():
    body = _ndjson({"response": "4", "done": False}, {"response": "", "done": True})
    rec = Recorder({"/api/generate": lambda r: httpx.Response(200, content=body)})
    stream = await make_client(rec).generate_completion("2+2=", model="llama3:8b")
    assert [c.fragment async for c in stream] == ["4", ""]
    sent = rec.bodies("/api/generate")[0]
    assert sent["prompt"] == "2+2="
    assert sent["model"] == "llama3:8b"
    assert "messages" not in sent
    assert rec.bodies("/api/tags") == []


@pytest.mark.asyncio
async def test_generate_completion_non_streaming():
    rec = Recorder({"/api/generate": lambda r: httpx.Response(200, json={"response": "four", "done": True})})
    completion = await make_client(rec).generate_completion("2+2?", stream=False)
    assert completion.content == "four"


# ---------------------------------------------------------------------------
# Client lifecycle
# ---------------------------------------------------------------------------

def test_client_is_a_model_backend():
    assert isinstance(OllamaClient(), ModelBackend)


def test_trailing_slash_stripped_from_base_url():
    client = OllamaClient(ClientConfig(base_url="http://host:11434/"))
    assert client.url == "http://host:11434"


@pytest.mark.asyncio
async def test_shared_http_client_is_not_closed():
    http = httpx.AsyncClient(transport=httpx.MockTransport(tags_ok))
    async with OllamaClient(http=http):
        pass
    assert not http.is_closed
    await http.aclose()
