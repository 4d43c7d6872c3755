from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from headless_coder.cancellation import CancellationToken
from headless_coder.errors import RunInProgressError
from headless_coder.events import CoderEvent, Provider, RunResult
from headless_coder.options import RunOptions, StartOptions
from headless_coder.structured import PromptInput


class HeadlessCoder(Protocol):
    provider: Provider

    async def start_thread(self, opts: StartOptions | None = None) -> ThreadHandle:
        ...

    async def resume_thread(self, thread_id: str, opts: StartOptions | None = None) -> ThreadHandle:
        ...

    async def run(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunResult:
        ...

    def run_streamed(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunStream:
        ...

    def get_thread_id(self, thread: ThreadHandle) -> str | None:
        ...

    def interrupt(self, thread: ThreadHandle, reason: str | None = None) -> None:
        ...

    async def close(self, thread: ThreadHandle) -> None:
        ...


@dataclass(eq=False)
class ThreadHandle:
    """Caller-facing handle for one conversation.

    ``internal`` is private to the adapter that issued the handle; callers only
    read ``provider`` and ``id``.
    """

    provider: Provider
    internal: Any
    id: str | None = None
    coder: HeadlessCoder | None = field(default=None, repr=False)

    def _owner(self) -> HeadlessCoder:
        if self.coder is None:
            raise RuntimeError(f"{self.provider} thread handle is not bound to an adapter")
        return self.coder

    async def run(self, prompt: PromptInput, opts: RunOptions | None = None) -> RunResult:
        return await self._owner().run(self, prompt, opts)

    def run_streamed(self, prompt: PromptInput, opts: RunOptions | None = None) -> RunStream:
        return self._owner().run_streamed(self, prompt, opts)

    async def interrupt(self, reason: str | None = None) -> None:
        self._owner().interrupt(self, reason or "Interrupted")

    async def close(self) -> None:
        await self._owner().close(self)


@dataclass(slots=True)
class ActiveRun:
    token: CancellationToken
    stop_external: Callable[[], None]


def claim_run(state: Any, provider: Provider, signal: CancellationToken | None) -> ActiveRun:
    """Reserves the thread's run slot or fails before any resource exists."""
    if state.current_run is not None:
        raise RunInProgressError(provider)
    token = CancellationToken()
    active = ActiveRun(token=token, stop_external=token.link(signal))
    state.current_run = active
    return active


def release_run(state: Any, active: ActiveRun) -> None:
    active.stop_external()
    if state.current_run is active:
        state.current_run = None


def abort_current_run(state: Any, reason: str | None) -> None:
    active = state.current_run
    if active is None:
        return
    active.token.abort(reason or "Interrupted")


class RunStream:
    """Async iterator over the canonical events of one streamed run.

    Breaking out of ``async for`` finalises the underlying generator, which
    aborts the run and tears the backend down. ``aclose`` (or ``async with``)
    does the same deterministically and also releases the thread's run slot
    when iteration never started. A stream dropped before iteration releases
    the run slot when it is garbage collected.
    """

    def __init__(self, events: AsyncIterator[CoderEvent], release: Callable[[], None]) -> None:
        self._events = events
        self._release = release
        self._started = False
        self._closed = False

    def __aiter__(self) -> RunStream:
        return self

    async def __anext__(self) -> CoderEvent:
        if self._closed:
            raise StopAsyncIteration
        self._started = True
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._started:
            self._release()
        aclose = getattr(self._events, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> RunStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __del__(self) -> None:
        if not self._started and not self._closed:
            self._closed = True
            self._release()
