from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from headless_coder.cancellation import (
    HARD_KILL_DELAY_SEC,
    SOFT_KILL_DELAY_SEC,
    CancellationToken,
    TerminationEscalation,
)
from headless_coder.events import CoderEvent, Provider, done_event, error_event, interrupted_events

LOGGER = logging.getLogger(__name__)

DEFAULT_LINE_LIMIT = 8 * 1024 * 1024
DEFAULT_STDERR_TAIL_CHARS = 4000
EXIT_GRACE_SEC = 1.0

Normalizer = Callable[[dict[str, Any]], list[CoderEvent]]
PayloadHook = Callable[[dict[str, Any]], None]
ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


@dataclass(slots=True)
class ProcessOutcome:
    stdout: str
    stderr: str
    returncode: int | None
    aborted: bool
    reason: str | None = None


def parse_json_line(line: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


def describe_exit(label: str, returncode: int | None) -> str:
    name = signal_name(returncode)
    if name:
        return f"{label} terminated by {name}"
    return f"{label} exited with code {returncode}"


class ManagedProcess:
    """One subprocess bound to a cancellation token.

    Aborting the token starts the termination escalation. ``wait`` resolves on
    the actual exit status, never on stdout EOF, and ``close`` guarantees the
    process is gone, the timers are disarmed and the pipes are drained on
    every exit path.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        provider: Provider,
        token: CancellationToken,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        soft_kill_delay: float = SOFT_KILL_DELAY_SEC,
        hard_kill_delay: float = HARD_KILL_DELAY_SEC,
        line_limit: int = DEFAULT_LINE_LIMIT,
        stderr_tail_chars: int = DEFAULT_STDERR_TAIL_CHARS,
        spawn: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self._argv = argv
        self._provider = provider
        self._token = token
        self._cwd = cwd
        self._env = env
        self._soft_kill_delay = soft_kill_delay
        self._hard_kill_delay = hard_kill_delay
        self._line_limit = line_limit
        self._stderr_tail_chars = stderr_tail_chars
        self._spawn = spawn

        self._process: asyncio.subprocess.Process | None = None
        self._escalation: TerminationEscalation | None = None
        self._exit_task: asyncio.Future[int] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_chunks: list[str] = []
        self._stop_abort: Callable[[], None] = lambda: None
        self._closed = False

    @property
    def label(self) -> str:
        return Path(self._argv[0]).name if self._argv else self._provider

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def escalation(self) -> TerminationEscalation | None:
        return self._escalation

    @property
    def stderr_text(self) -> str:
        return "".join(self._stderr_chunks).strip()[-self._stderr_tail_chars :]

    async def start(self) -> None:
        if self._process is not None:
            return
        env = {**os.environ, **self._env} if self._env else None
        self._process = await self._spawn(
            *self._argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd or None,
            env=env,
            limit=self._line_limit,
        )
        LOGGER.info("spawned process provider=%s pid=%s", self._provider, self._process.pid)

        escalation = TerminationEscalation(
            self._process,
            soft_kill_delay=self._soft_kill_delay,
            hard_kill_delay=self._hard_kill_delay,
            label=self.label,
        )
        self._escalation = escalation
        self._exit_task = asyncio.ensure_future(self._process.wait())
        self._exit_task.add_done_callback(lambda _task: escalation.cancel())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._stop_abort = self._token.add_callback(self._on_abort)

    async def read_payload(self) -> dict[str, Any] | None:
        """Returns the next JSON object on stdout, or None at EOF.

        Blank, malformed and non-object lines are skipped.
        """
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                LOGGER.warning("discarding oversized output line provider=%s", self._provider)
                continue
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            payload = parse_json_line(line)
            if payload is None:
                LOGGER.debug("discarding malformed output line provider=%s line=%s", self._provider, line[:200])
                continue
            return payload

    async def read_stdout(self) -> str:
        assert self._process is not None and self._process.stdout is not None
        return (await self._process.stdout.read()).decode("utf-8", errors="replace")

    async def wait(self) -> int:
        """Waits for the actual process exit, then for stderr to drain."""
        assert self._exit_task is not None
        returncode = await asyncio.shield(self._exit_task)
        if self._stderr_task is not None and not self._stderr_task.done():
            await asyncio.wait({self._stderr_task}, timeout=EXIT_GRACE_SEC)
        LOGGER.info(
            "process exited provider=%s pid=%s rc=%s aborted=%s",
            self._provider,
            self._process.pid if self._process else None,
            returncode,
            self._token.aborted,
        )
        return returncode

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_abort()
        process = self._process
        if process is None:
            return
        assert self._escalation is not None and self._exit_task is not None
        try:
            if not self._exit_task.done():
                self._escalation.start()
                await self._await_exit(self._hard_kill_delay + EXIT_GRACE_SEC)
                if not self._exit_task.done():
                    LOGGER.warning("process ignored escalation provider=%s pid=%s; killing", self._provider, process.pid)
                    with suppress(ProcessLookupError):
                        process.kill()
                    await self._await_exit(EXIT_GRACE_SEC)
        finally:
            self._escalation.cancel()
            await _cancel_task(self._stderr_task)
            if process.stdout is not None and self._exit_task.done():
                with suppress(asyncio.TimeoutError, ValueError):
                    await asyncio.wait_for(process.stdout.read(), timeout=EXIT_GRACE_SEC)

    def _on_abort(self, reason: str) -> None:
        LOGGER.info("run aborted provider=%s reason=%s", self._provider, reason)
        if self._escalation is not None:
            self._escalation.start()

    async def _await_exit(self, timeout: float) -> None:
        assert self._exit_task is not None
        await asyncio.wait({self._exit_task}, timeout=timeout)

    async def _drain_stderr(self) -> None:
        assert self._process is not None
        stderr = self._process.stderr
        if stderr is None:
            return
        limit = self._stderr_tail_chars * 2
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                return
            self._stderr_chunks.append(chunk.decode("utf-8", errors="replace"))
            if sum(len(part) for part in self._stderr_chunks) > limit:
                self._stderr_chunks = ["".join(self._stderr_chunks)[-limit:]]


class ProcessRunController(ManagedProcess):
    """Turns one CLI invocation into a canonical event stream or an outcome.

    Backend ``done``/``error`` events are held back until the exit status is
    known, so a crash after the last JSON line still surfaces as an error and
    every stream ends in exactly one terminal event.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        normalize: Normalizer,
        on_payload: PayloadHook | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(argv, **kwargs)
        self._normalize = normalize
        self._on_payload = on_payload
        self._finished = False

    async def stream(self) -> AsyncIterator[CoderEvent]:
        pending_done: CoderEvent | None = None
        pending_error: CoderEvent | None = None
        try:
            try:
                await self.start()
            except OSError as error:
                self._finished = True
                yield error_event(self._provider, f"failed to start {self.label}: {error}", code="spawn_failed")
                return

            while not self._token.aborted:
                payload = await self.read_payload()
                if payload is None:
                    break
                if self._on_payload is not None:
                    self._on_payload(payload)
                for event in self._normalize(payload):
                    if event.type == "done":
                        pending_done = pending_done or event
                        continue
                    if event.type == "error":
                        pending_error = pending_error or event
                        continue
                    if self._token.aborted:
                        break
                    yield event

            returncode = await self.wait()
            self._finished = True
            for event in self._terminal_events(returncode, pending_done, pending_error):
                yield event
        finally:
            if not self._finished:
                self._token.abort("Stream closed")
            await self.close()

    async def run_to_completion(self) -> ProcessOutcome:
        try:
            await self.start()
            stdout = await self.read_stdout()
            returncode = await self.wait()
            self._finished = True
            return ProcessOutcome(
                stdout=stdout,
                stderr=self.stderr_text,
                returncode=returncode,
                aborted=self._token.aborted,
                reason=self._token.reason,
            )
        finally:
            await self.close()

    def _terminal_events(
        self,
        returncode: int | None,
        pending_done: CoderEvent | None,
        pending_error: CoderEvent | None,
    ) -> list[CoderEvent]:
        if self._token.aborted:
            return interrupted_events(self._provider, self._token.reason)
        if returncode != 0:
            message = describe_exit(self.label, returncode)
            stderr = self.stderr_text
            detail = pending_error.payload.get("message") if pending_error is not None else None
            if detail:
                message = f"{message}: {detail}"
            elif stderr:
                message = f"{message}: {stderr}"
            return [
                error_event(
                    self._provider,
                    message,
                    code="process_exit",
                    exit_code=returncode,
                    signal=signal_name(returncode),
                    stderr=stderr,
                )
            ]
        if pending_error is not None:
            return [pending_error]
        return [pending_done or done_event(self._provider, raw={"reason": "completed"})]


async def _cancel_task(task: asyncio.Future[Any] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
