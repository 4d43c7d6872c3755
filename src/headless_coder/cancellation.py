from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Callable, Protocol

LOGGER = logging.getLogger(__name__)

SOFT_KILL_DELAY_SEC = 0.25
HARD_KILL_DELAY_SEC = 1.5


class CancellationToken:
    """Cooperative cancellation flag shared by one run and its triggers.

    The token flips from live to aborted exactly once. ``abort`` may be called
    from an external signal, from an abandoned stream or from
    ``ThreadHandle.interrupt``; only the first call records a reason and fires
    the registered callbacks.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> bool:
        if self._aborted:
            return False
        self._aborted = True
        self._reason = reason or "Interrupted"
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception:
                LOGGER.exception("cancellation callback failed reason=%s", self._reason)
        return True

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Registers ``callback`` and returns a function that unregisters it."""
        if self._aborted:
            callback(self._reason or "Interrupted")
            return _noop

        self._callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return _remove

    def link(self, parent: CancellationToken | None) -> Callable[[], None]:
        """Aborts this token whenever ``parent`` aborts."""
        if parent is None:
            return _noop
        return parent.add_callback(lambda reason: self.abort(reason))

    async def wait(self) -> str:
        if self._event is None:
            self._event = asyncio.Event()
            if self._aborted:
                self._event.set()
        await self._event.wait()
        return self._reason or "Interrupted"

    def __repr__(self) -> str:
        state = f"aborted reason={self._reason!r}" if self._aborted else "live"
        return f"<CancellationToken {state}>"


def _noop() -> None:
    return None


class KillableProcess(Protocol):
    pid: int
    returncode: int | None
    stdin: Any

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class TerminationEscalation:
    """Soft-then-hard termination schedule for one subprocess.

    ``start`` closes stdin right away and arms two timers measured from the
    abort time: SIGTERM at ``soft_deadline`` and SIGKILL at ``hard_deadline``.
    Each timer re-checks the exit status before signalling, and ``cancel``
    disarms both once the process has exited.
    """

    def __init__(
        self,
        process: KillableProcess,
        *,
        soft_kill_delay: float = SOFT_KILL_DELAY_SEC,
        hard_kill_delay: float = HARD_KILL_DELAY_SEC,
        label: str = "process",
    ) -> None:
        self._process = process
        self.soft_kill_delay = soft_kill_delay
        self.hard_kill_delay = max(hard_kill_delay, soft_kill_delay)
        self._label = label
        self.soft_deadline: float | None = None
        self.hard_deadline: float | None = None
        self.signals_sent: list[str] = []
        self._soft_handle: asyncio.TimerHandle | None = None
        self._hard_handle: asyncio.TimerHandle | None = None

    @property
    def started(self) -> bool:
        return self.soft_deadline is not None

    @property
    def armed(self) -> bool:
        return self._soft_handle is not None or self._hard_handle is not None

    def start(self) -> None:
        if self.started:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        self.soft_deadline = now + self.soft_kill_delay
        self.hard_deadline = now + self.hard_kill_delay
        self._close_stdin()
        if self._process.returncode is not None:
            return
        self._soft_handle = loop.call_at(self.soft_deadline, self._fire, "SIGTERM")
        self._hard_handle = loop.call_at(self.hard_deadline, self._fire, "SIGKILL")

    def cancel(self) -> None:
        if self._soft_handle is not None:
            self._soft_handle.cancel()
            self._soft_handle = None
        if self._hard_handle is not None:
            self._hard_handle.cancel()
            self._hard_handle = None

    def _fire(self, signal_name: str) -> None:
        if signal_name == "SIGTERM":
            self._soft_handle = None
        else:
            self._hard_handle = None
        if self._process.returncode is not None:
            self.cancel()
            return
        LOGGER.info("escalating termination label=%s pid=%s signal=%s", self._label, self._process.pid, signal_name)
        with suppress(ProcessLookupError):
            if signal_name == "SIGKILL":
                self._process.kill()
            else:
                self._process.terminate()
        self.signals_sent.append(signal_name)

    def _close_stdin(self) -> None:
        stdin = getattr(self._process, "stdin", None)
        if stdin is None:
            return
        is_closing = getattr(stdin, "is_closing", None)
        if callable(is_closing) and is_closing():
            return
        with suppress(OSError, RuntimeError):
            stdin.close()
