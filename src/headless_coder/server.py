from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from headless_coder.adapters import get_adapter
from headless_coder.adapters.base import HeadlessCoder, RunStream, ThreadHandle
from headless_coder.errors import CoderRunError, InterruptedRunError, RunInProgressError
from headless_coder.events import Provider
from headless_coder.options import RunOptions, StartOptions
from headless_coder.registry import registered_providers
from headless_coder.schemas import CreateSessionRequest, InterruptRequest, RunRequest
from headless_coder.settings import CoderSettings, get_settings, load_provider_defaults

LOGGER = logging.getLogger(__name__)

CoderFactory = Callable[[str, Optional[StartOptions]], HeadlessCoder]

HTTP_CLIENT_CLOSED_REQUEST = 499


@dataclass(slots=True)
class OpenSession:
    session_id: str
    provider: str
    coder: HeadlessCoder
    thread: ThreadHandle

    def view(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "provider": self.provider, "thread_id": self.thread.id}


class SessionStore:
    """In-memory table of open threads, keyed ``<provider>:<thread id or uuid>``."""

    def __init__(self) -> None:
        self._entries: dict[str, OpenSession] = {}

    def add(self, provider: str, coder: HeadlessCoder, thread: ThreadHandle) -> OpenSession:
        session_id = f"{provider}:{thread.id or uuid.uuid4().hex}"
        if session_id in self._entries:
            session_id = f"{provider}:{uuid.uuid4().hex}"
        entry = OpenSession(session_id=session_id, provider=provider, coder=coder, thread=thread)
        self._entries[session_id] = entry
        return entry

    def get(self, session_id: str) -> OpenSession:
        entry = self._entries.get(session_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"unknown session_id: {session_id}")
        return entry

    def pop(self, session_id: str) -> OpenSession:
        entry = self.get(session_id)
        del self._entries[session_id]
        return entry

    def entries(self) -> list[OpenSession]:
        return list(self._entries.values())


def create_app(
    *,
    settings: CoderSettings | None = None,
    provider_defaults: dict[Provider, StartOptions] | None = None,
    coder_factory: CoderFactory = get_adapter,
) -> FastAPI:
    resolved_settings = settings or get_settings()
    defaults = provider_defaults if provider_defaults is not None else load_provider_defaults(resolved_settings.config_path)
    store = SessionStore()

    app = FastAPI(title="Headless Coder", version="0.1.0")
    app.state.sessions = store

    @app.on_event("shutdown")
    async def _shutdown_event() -> None:
        for entry in store.entries():
            await entry.thread.close()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "providers": registered_providers(), "sessions": len(store.entries())}

    @app.post("/sessions")
    async def create_session(request: CreateSessionRequest) -> dict[str, Any]:
        try:
            coder = coder_factory(request.provider, defaults.get(request.provider))
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error

        options = request.options.to_start_options()
        if request.resume:
            thread = await coder.resume_thread(request.resume, options)
        else:
            thread = await coder.start_thread(options)
        entry = store.add(request.provider, coder, thread)
        LOGGER.info("session opened session_id=%s provider=%s", entry.session_id, entry.provider)
        return {"ok": True, "result": entry.view()}

    @app.post("/sessions/{session_id}/run")
    async def run_session(session_id: str, request: RunRequest) -> dict[str, Any]:
        entry = store.get(session_id)
        try:
            result = await entry.thread.run(request.prompt_input(), _run_options(request))
        except RunInProgressError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
        except InterruptedRunError as error:
            raise HTTPException(status_code=HTTP_CLIENT_CLOSED_REQUEST, detail=str(error)) from error
        except CoderRunError as error:
            LOGGER.warning("run failed session_id=%s code=%s error=%s", session_id, error.code, error)
            raise HTTPException(status_code=502, detail=str(error)) from error
        return {"ok": True, "result": result.to_dict()}

    @app.post("/sessions/{session_id}/stream")
    async def stream_session(session_id: str, request: RunRequest) -> StreamingResponse:
        entry = store.get(session_id)
        try:
            stream = entry.thread.run_streamed(request.prompt_input(), _run_options(request))
        except RunInProgressError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
        return StreamingResponse(_ndjson(stream), media_type="application/x-ndjson")

    @app.post("/sessions/{session_id}/interrupt")
    async def interrupt_session(session_id: str, request: Optional[InterruptRequest] = None) -> dict[str, Any]:
        entry = store.get(session_id)
        reason = request.reason if request is not None else None
        await entry.thread.interrupt(reason)
        return {"ok": True, "result": entry.view()}

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        entry = store.pop(session_id)
        await entry.thread.close()
        LOGGER.info("session closed session_id=%s", session_id)
        return {"ok": True, "result": entry.view()}

    return app


def _run_options(request: RunRequest) -> RunOptions:
    return RunOptions(
        output_schema=request.output_schema,
        stream_partial_messages=request.stream_partial_messages,
        extra_env=dict(request.extra_env),
    )


async def _ndjson(stream: RunStream) -> AsyncIterator[str]:
    async with stream:
        async for event in stream:
            yield json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n"
