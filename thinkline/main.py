"""
FastAPI application: the local API a browser chat UI talks to.

Streams chat replies as NDJSON: one {"thinking", "answer"} record per model
chunk, then a closing {"done": true, "status": ...} record.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from thinkline.backends.base import ModelBackend, PullProgress, PullResult
from thinkline.backends.ollama import OllamaClient
from thinkline.config import ClientConfig, StorageConfig, load_config, setup_logging
from thinkline.errors import ThinklineError
from thinkline.session import ChatSession
from thinkline.storage import ChatStore, new_id, open_store

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"


def _line(record: dict) -> str:
    return json.dumps(record, ensure_ascii=False) + "\n"


def create_app(
    cfg: dict | None = None,
    *,
    client: ModelBackend | None = None,
    store: ChatStore | None = None,
) -> FastAPI:
    """
    Build the app. client and store are created from config at startup
    unless they are passed in.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = cfg if cfg is not None else load_config()
        setup_logging(config)
        owned_client = None
        app.state.store = store or open_store(StorageConfig.from_config(config))
        if client is None:
            owned_client = OllamaClient(ClientConfig.from_config(config))
        app.state.client = client or owned_client
        app.state.sessions = {}
        app.state.in_flight = set()
        logger.info("thinkline API ready")
        try:
            yield
        finally:
            for session in app.state.sessions.values():
                session.cancel()
            if owned_client is not None:
                await owned_client.aclose()

    app = FastAPI(title="thinkline", lifespan=lifespan)

    # ─ Server ─────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        result = await request.app.state.client.test_connection()
        body = {
            "reachable": result.reachable,
            "models": [m.name for m in result.models],
            "reason": result.reason,
        }
        return JSONResponse(body, status_code=200 if result.reachable else 503)

    @app.get("/api/models")
    async def list_models(request: Request):
        try:
            models = await request.app.state.client.list_models()
        except ThinklineError as e:
            return JSONResponse({"error": str(e)}, status_code=502)
        return {"models": [{"name": m.name, "size": m.size, "modified_at": m.modified_at} for m in models]}

    @app.post("/api/models/pull")
    async def pull_model(request: Request):
        body = await request.json()
        name = (body or {}).get("name", "")
        if not name:
            return JSONResponse({"error": "name is required"}, status_code=400)
        client = request.app.state.client
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(progress: PullProgress):
            queue.put_nowait({
                "status": progress.status,
                "completed": progress.completed,
                "total": progress.total,
                "percent": progress.percent,
            })

        async def run_pull():
            result = PullResult(ok=False, model=name, error="pull aborted")
            try:
                result = await client.pull_model(name, on_progress=on_progress)
            finally:
                queue.put_nowait({"done": True, "ok": result.ok, "error": result.error})

        async def event_stream():
            task = asyncio.create_task(run_pull())
            try:
                while True:
                    item = await queue.get()
                    yield _line(item)
                    if item.get("done"):
                        break
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(event_stream(), media_type=NDJSON)

    # ─ Chats ──────────────────────────────────────────────────────────────

    @app.get("/api/chats")
    async def list_chats(request: Request):
        return {"chats": [c.to_dict() for c in request.app.state.store.load_history()]}

    @app.get("/api/chats/{chat_id}/messages")
    async def chat_messages(chat_id: str, request: Request):
        store = request.app.state.store
        if store.get_chat(chat_id) is None:
            return JSONResponse({"error": f"No chat {chat_id}"}, status_code=404)
        return {"messages": [m.to_dict() for m in store.load_messages(chat_id)]}

    @app.delete("/api/chats/{chat_id}")
    async def delete_chat(chat_id: str, request: Request):
        session = request.app.state.sessions.pop(chat_id, None)
        if session is not None:
            session.cancel()
        ok = request.app.state.store.delete_chat(chat_id)
        if not ok:
            return JSONResponse({"ok": False, "error": "Storage failure while deleting"}, status_code=500)
        return {"ok": True}

    @app.post("/api/chat")
    async def chat(request: Request):
        body = await request.json()
        if not isinstance(body, dict):
            return JSONResponse({"error": "expected an object"}, status_code=400)
        text = str(body.get("message", "")).strip()
        if not text:
            return JSONResponse({"error": "message is required"}, status_code=400)
        chat_id = str(body.get("chat_id") or new_id())
        sessions = request.app.state.sessions
        in_flight = request.app.state.in_flight

        session = sessions.get(chat_id)
        if chat_id in in_flight or (session is not None and session.busy):
            return JSONResponse({"error": "A reply is already in progress for this chat"}, status_code=409)
        if session is None:
            session = ChatSession(
                request.app.state.client,
                request.app.state.store,
                chat_id=chat_id,
                model=body.get("model"),
            )
            sessions[chat_id] = session
        # Claimed before the first await so an overlapping request sees it.
        in_flight.add(chat_id)

        queue: asyncio.Queue = asyncio.Queue()
        session.on_answer = lambda _answer: queue.put_nowait(
            {"thinking": session.live_thinking, "answer": session.live_answer}
        )

        async def run_send():
            outcome = None
            failure = "internal error"
            try:
                outcome = await session.send(text)
            except Exception as e:
                logger.exception("Chat %s failed", chat_id)
                failure = str(e) or type(e).__name__
            finally:
                in_flight.discard(chat_id)
                queue.put_nowait({
                    "done": True,
                    "status": outcome.status.value if outcome else "error",
                    "chat_id": outcome.chat_id if outcome else chat_id,
                    "answer": outcome.answer if outcome else "",
                    "error": outcome.error if outcome else failure,
                    "storage_error": session.storage_error,
                })

        task = asyncio.create_task(run_send())

        async def event_stream():
            try:
                while True:
                    item = await queue.get()
                    yield _line(item)
                    if item.get("done"):
                        break
            finally:
                if not task.done():
                    session.cancel()
                session.acknowledge()

        return StreamingResponse(event_stream(), media_type=NDJSON)

    # ─ Settings and data ──────────────────────────────────────────────────

    @app.get("/api/settings")
    async def get_settings(request: Request):
        return request.app.state.store.load_settings().to_dict()

    @app.post("/api/settings")
    async def update_settings(request: Request):
        body = await request.json()
        if not isinstance(body, dict):
            return JSONResponse({"error": "expected an object"}, status_code=400)
        store = request.app.state.store
        for key, value in body.items():
            if not store.update_setting(key, value):
                return JSONResponse({"error": f"Could not update setting {key}"}, status_code=400)
        return store.load_settings().to_dict()

    @app.get("/api/export")
    async def export_data(request: Request):
        document = request.app.state.store.export_data()
        if document is None:
            return JSONResponse({"error": "Export failed"}, status_code=500)
        return Response(
            content=document,
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="thinkline-export.json"'},
        )

    @app.post("/api/import")
    async def import_data(request: Request):
        document = (await request.body()).decode("utf-8", errors="replace")
        if not request.app.state.store.import_data(document):
            return JSONResponse({"ok": False, "error": "Import failed"}, status_code=400)
        return {"ok": True}

    @app.delete("/api/data")
    async def clear_data(request: Request):
        for session in request.app.state.sessions.values():
            session.cancel()
        request.app.state.sessions.clear()
        ok = request.app.state.store.clear_all()
        return JSONResponse({"ok": ok}, status_code=200 if ok else 500)

    @app.get("/api/storage")
    async def storage_info(request: Request):
        store = request.app.state.store
        return {"available": store.is_available(), "usage": store.storage_info()}

    return app


app = create_app()
