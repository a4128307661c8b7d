"""
Ollama backend: chat against a local Ollama server over its native API.
Streaming endpoints answer with NDJSON; see thinkline.backends.stream.
"""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from thinkline.backends.base import (
    Completion,
    ConnectionResult,
    ModelBackend,
    ModelInfo,
    PullProgress,
    PullResult,
    StreamChunk,
)
from thinkline.backends.stream import CompletionStream, RecordStream
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
    ThinklineError,
)
from thinkline.segmenter import ANSWER_CLOSE, ANSWER_OPEN, THINK_CLOSE, THINK_OPEN

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = f"""You are a helpful AI assistant. The user can ask you anything.
Before answering, reason about the question carefully. Write that reasoning
inside {THINK_OPEN}...{THINK_CLOSE}. Then write the final response, and only the final
response, inside {ANSWER_OPEN}...{ANSWER_CLOSE}.

Example:
User: What is the capital of France?
Assistant: {THINK_OPEN}
The user is asking about France. Its capital city is Paris.
{THINK_CLOSE}
{ANSWER_OPEN}
The capital of France is Paris.
{ANSWER_CLOSE}
"""


def with_system_prompt(messages: list[dict]) -> list[dict]:
    """Prepend the tag instruction unless the caller already brought a system message."""
    if any(m.get("role") == "system" for m in messages):
        return list(messages)
    return [{"role": "system", "content": SYSTEM_PROMPT}, *messages]


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
    except ValueError:
        pass
    return resp.text[:200]


class OllamaClient(ModelBackend):
    """
    Client for one Ollama server.
    Pass an httpx.AsyncClient to share a connection pool (or a MockTransport
    in tests); otherwise the client owns one and closes it in aclose().
    """

    def __init__(self, config: ClientConfig | None = None, http: httpx.AsyncClient | None = None):
        self.config = config or ClientConfig()
        self.url = self.config.base_url
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=self.config.timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ─ Transport ──────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, *, json: dict | None = None,
                       timeout: float | None = None) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{self.url}{path}",
                json=json,
                timeout=timeout if timeout is not None else self.config.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Ollama %s %s timed out", method, path)
            raise RequestTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning("Ollama %s %s failed: %s", method, path, e)
            raise ServerUnreachableError(f"Cannot reach Ollama at {self.url}: {e}") from e

    async def _open_stream(self, path: str, body: dict, timeout: httpx.Timeout | float | None = None) -> httpx.Response:
        """POST and return the response once headers arrive; the body is left unread."""
        request = self._http.build_request(
            "POST",
            f"{self.url}{path}",
            json=body,
            timeout=timeout if timeout is not None else self.config.timeout,
        )
        try:
            resp = await self._http.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("Ollama stream %s timed out", path)
            raise RequestTimeoutError(f"POST {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning("Ollama stream %s failed: %s", path, e)
            raise ServerUnreachableError(f"Cannot reach Ollama at {self.url}: {e}") from e

        if resp.status_code >= 400:
            try:
                await resp.aread()
                detail = _error_detail(resp)
            finally:
                await resp.aclose()
            raise ServerStatusError(
                f"Ollama API error: HTTP {resp.status_code}: {detail}", resp.status_code
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response is not JSON: {resp.text[:200]}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Expected a JSON object, got {type(data).__name__}")
        return data

    @staticmethod
    def _parse_models(data: dict) -> list[ModelInfo]:
        raw = data.get("models", [])
        if not isinstance(raw, list):
            raise MalformedResponseError("'models' is not a list")
        models = [ModelInfo.from_record(m) for m in raw]
        return [m for m in models if m is not None]

    # ─ Catalog ────────────────────────────────────────────────────────────

    async def test_connection(self) -> ConnectionResult:
        """Probe /api/tags with the short connect timeout."""
        try:
            resp = await self._request("GET", "/api/tags", timeout=self.config.connect_timeout)
            if resp.status_code != 200:
                return ConnectionResult(reachable=False, reason=f"HTTP error! status: {resp.status_code}")
            models = self._parse_models(self._json(resp))
        except ThinklineError as e:
            return ConnectionResult(reachable=False, reason=str(e))
        return ConnectionResult(reachable=True, models=models)

    async def list_models(self) -> list[ModelInfo]:
        resp = await self._request("GET", "/api/tags")
        if resp.status_code >= 400:
            raise ModelListError(f"Failed to fetch models: {resp.status_code}", resp.status_code)
        models = self._parse_models(self._json(resp))
        logger.debug("Ollama at %s lists %d models", self.url, len(models))
        return models

    async def get_model_info(self, name: str) -> dict:
        resp = await self._request("POST", "/api/show", json={"name": name})
        if resp.status_code >= 400:
            raise ModelInfoError(f"Failed to get model info: {resp.status_code}", resp.status_code)
        return self._json(resp)

    async def pull_model(
        self, name: str, on_progress: Callable[[PullProgress], None] | None = None
    ) -> PullResult:
        """
        Pull a model, calling on_progress once per progress record.
        Records that are not progress updates are skipped. Pulls can take a
        long time, so reads have no timeout.
        """
        try:
            resp = await self._open_stream(
                "/api/pull",
                {"name": name},
                timeout=httpx.Timeout(self.config.timeout, read=None),
            )
        except ThinklineError as e:
            logger.error("Error pulling model %s: %s", name, e)
            return PullResult(ok=False, model=name, error=str(e))

        try:
            async with RecordStream(resp.aiter_bytes(), on_close=resp.aclose) as records:
                async for record in records:
                    if "error" in record:
                        logger.error("Pull of %s failed: %s", name, record["error"])
                        return PullResult(ok=False, model=name, error=str(record["error"]))
                    progress = PullProgress.from_record(record)
                    if progress is None:
                        logger.debug("Skipping non-progress pull record: %r", record)
                        continue
                    if on_progress:
                        on_progress(progress)
        except StreamReadError as e:
            logger.error("Error pulling model %s: %s", name, e)
            return PullResult(ok=False, model=name, error=str(e))

        logger.info("Model %s pulled", name)
        return PullResult(ok=True, model=name)

    # ─ Completions ────────────────────────────────────────────────────────

    @staticmethod
    def _chat_chunk(record: dict) -> StreamChunk | None:
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        done = bool(record.get("done", False))
        if not isinstance(content, str):
            content = ""
        if not content and not done:
            return None
        return StreamChunk(fragment=content, is_final=done, raw=record)

    @staticmethod
    def _generate_chunk(record: dict) -> StreamChunk | None:
        content = record.get("response")
        done = bool(record.get("done", False))
        if not isinstance(content, str):
            content = ""
        if not content and not done:
            return None
        return StreamChunk(fragment=content, is_final=done, raw=record)

    async def chat_completion(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        params: dict | None = None,
        stream: bool = True,
    ) -> CompletionStream | Completion:
        """
        Chat request against /api/chat.

        Raises ModelUnavailableError if the model is not installed; the caller
        decides whether to pull and retry. Cancelling the awaiting task
        cancels the HTTP request; a returned stream closes its response when
        exhausted, on error, or when used as an async context manager.
        """
        model = model or self.config.default_model
        options = self.config.params_for(model, params)

        installed = await self.list_models()
        if not any(m.name == model for m in installed):
            raise ModelUnavailableError(model)

        body = {
            "model": model,
            "messages": with_system_prompt(messages),
            "stream": stream,
            "options": options,
        }
        logger.debug("Chat request: model=%s, %d messages, stream=%s", model, len(body["messages"]), stream)

        if stream:
            resp = await self._open_stream("/api/chat", body)
            records = RecordStream(resp.aiter_bytes(), on_close=resp.aclose)
            return CompletionStream(records, self._chat_chunk, model=model)

        resp = await self._request("POST", "/api/chat", json=body)
        if resp.status_code >= 400:
            raise ServerStatusError(
                f"Ollama API error: HTTP {resp.status_code}: {_error_detail(resp)}", resp.status_code
            )
        data = self._json(resp)
        message = data.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise MalformedResponseError("Chat response has no message content")
        return Completion(
            content=message["content"],
            role=message.get("role", "assistant"),
            model=data.get("model", model),
            created_at=data.get("created_at", ""),
            done=bool(data.get("done", True)),
            raw=data,
        )

    async def generate_completion(
        self,
        prompt: str,
        *,
        model: str | None = None,
        params: dict | None = None,
        stream: bool = True,
    ) -> CompletionStream | Completion:
        """Single-prompt request against /api/generate. No system prompt is added."""
        model = model or self.config.default_model
        body = {
            "model": model,
            "prompt": prompt,
            "stream": stream,
            "options": self.config.params_for(model, params),
        }

        if stream:
            resp = await self._open_stream("/api/generate", body)
            records = RecordStream(resp.aiter_bytes(), on_close=resp.aclose)
            return CompletionStream(records, self._generate_chunk, model=model)

        resp = await self._request("POST", "/api/generate", json=body)
        if resp.status_code >= 400:
            raise ServerStatusError(
                f"Ollama API error: HTTP {resp.status_code}: {_error_detail(resp)}", resp.status_code
            )
        data = self._json(resp)
        if not isinstance(data.get("response"), str):
            raise MalformedResponseError("Generate response has no 'response' text")
        return Completion(
            content=data["response"],
            model=data.get("model", model),
            created_at=data.get("created_at", ""),
            done=bool(data.get("done", True)),
            raw=data,
        )
