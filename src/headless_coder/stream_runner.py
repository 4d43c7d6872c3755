from __future__ import annotations

import logging
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from headless_coder.cancellation import CancellationToken
from headless_coder.errors import is_interrupted_error
from headless_coder.events import CoderEvent, Provider, done_event, error_event, interrupted_events

LOGGER = logging.getLogger(__name__)

SourceOpener = Callable[[], Awaitable[AsyncIterable[Any]]]
NativeNormalizer = Callable[[Any], list[CoderEvent]]
NativeHook = Callable[[Any], None]


class StreamRunController:
    """Drives a backend-provided async sequence with the process contract.

    The sequence is iterated in the consumer's own task so SDKs that bind
    cancel scopes to the iterating task keep working. Cancellation reaches the
    backend through the token (the adapter wires it into the SDK), and any
    early exit closes the sequence.

    Backend ``done``/``error`` events are held until the sequence is exhausted:
    a failure raised after a backend ``done`` still ends the stream in ``error``.
    """

    def __init__(
        self,
        open_source: SourceOpener,
        *,
        provider: Provider,
        token: CancellationToken,
        normalize: NativeNormalizer,
        on_native: NativeHook | None = None,
    ) -> None:
        self._open_source = open_source
        self._provider = provider
        self._token = token
        self._normalize = normalize
        self._on_native = on_native

    async def stream(self) -> AsyncIterator[CoderEvent]:
        source: AsyncIterable[Any] | None = None
        pending: CoderEvent | None = None
        finished = False
        try:
            try:
                source = await self._open_source()
                async for native in source:
                    if self._on_native is not None:
                        self._on_native(native)
                    for event in self._normalize(native):
                        if self._token.aborted:
                            break
                        if event.is_terminal:
                            pending = _hold_terminal(pending, event)
                            continue
                        yield event
                    if self._token.aborted:
                        break
            except Exception as error:
                finished = True
                if self._token.aborted:
                    for event in interrupted_events(self._provider, self._token.reason):
                        yield event
                    return
                if pending is not None and pending.type == "error":
                    yield pending
                    return
                if is_interrupted_error(error):
                    yield error_event(self._provider, str(error) or "Interrupted", code="interrupted")
                    return
                LOGGER.warning("backend stream failed provider=%s error=%s", self._provider, error)
                code = getattr(error, "code", None)
                yield error_event(
                    self._provider,
                    str(error) or type(error).__name__,
                    code=code if isinstance(code, str) and code else "backend_error",
                    exit_code=getattr(error, "exit_code", None),
                )
                return

            finished = True
            if self._token.aborted:
                for event in interrupted_events(self._provider, self._token.reason):
                    yield event
                return
            yield pending or done_event(self._provider, raw={"reason": "completed"})
        finally:
            if not finished:
                self._token.abort("Stream closed")
            if source is not None:
                await _aclose(source)


def _hold_terminal(pending: CoderEvent | None, event: CoderEvent) -> CoderEvent:
    """Keeps the first backend error, otherwise the first ``done``."""
    if pending is None or (pending.type == "done" and event.type == "error"):
        return event
    return pending


async def _aclose(source: AsyncIterable[Any]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as error:
        LOGGER.warning("failed to close backend stream error=%s", error)
