from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


Provider = Literal["gemini", "claude", "codex"]

CODER_TYPES: dict[str, Provider] = {
    "CODEX": "codex",
    "CLAUDE_CODE": "claude",
    "GEMINI": "gemini",
}

CoderEventType = Literal[
    "init",
    "message",
    "tool_use",
    "tool_result",
    "progress",
    "permission",
    "usage",
    "error",
    "cancelled",
    "done",
]

TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass(slots=True)
class CoderEvent:
    type: CoderEventType
    provider: Provider
    payload: dict[str, Any] = field(default_factory=dict)
    raw: Any = None
    ts: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": self.type, "provider": self.provider, "ts": self.ts}
        frame.update(self.payload)
        return frame


@dataclass(slots=True)
class RunResult:
    thread_id: str | None = None
    text: str | None = None
    json: Any = None
    usage: Any = None
    raw: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "text": self.text,
            "json": self.json,
            "usage": self.usage,
        }


def init_event(provider: Provider, *, thread_id: str | None = None, model: str | None = None, raw: Any = None) -> CoderEvent:
    return CoderEvent(type="init", provider=provider, payload={"thread_id": thread_id, "model": model}, raw=raw)


def message_event(
    provider: Provider,
    text: str | None,
    *,
    role: str = "assistant",
    delta: bool = False,
    raw: Any = None,
) -> CoderEvent:
    return CoderEvent(
        type="message",
        provider=provider,
        payload={"role": role, "text": text, "delta": delta},
        raw=raw,
    )


def tool_use_event(provider: Provider, name: str, *, call_id: str | None = None, args: Any = None, raw: Any = None) -> CoderEvent:
    return CoderEvent(
        type="tool_use",
        provider=provider,
        payload={"name": name, "call_id": call_id, "args": args},
        raw=raw,
    )


def tool_result_event(
    provider: Provider,
    name: str,
    *,
    call_id: str | None = None,
    result: Any = None,
    exit_code: int | None = None,
    raw: Any = None,
) -> CoderEvent:
    return CoderEvent(
        type="tool_result",
        provider=provider,
        payload={"name": name, "call_id": call_id, "result": result, "exit_code": exit_code},
        raw=raw,
    )


def progress_event(provider: Provider, label: str, *, detail: str | None = None, raw: Any = None) -> CoderEvent:
    return CoderEvent(type="progress", provider=provider, payload={"label": label, "detail": detail}, raw=raw)


def permission_event(provider: Provider, *, request: Any = None, decision: str | None = None, raw: Any = None) -> CoderEvent:
    return CoderEvent(type="permission", provider=provider, payload={"request": request, "decision": decision}, raw=raw)


def usage_event(provider: Provider, stats: Any, *, raw: Any = None) -> CoderEvent:
    return CoderEvent(type="usage", provider=provider, payload={"stats": stats}, raw=raw)


def error_event(provider: Provider, message: str, *, code: str | None = None, raw: Any = None, **extra: Any) -> CoderEvent:
    payload: dict[str, Any] = {"code": code, "message": message}
    payload.update(extra)
    return CoderEvent(type="error", provider=provider, payload=payload, raw=raw)


def cancelled_event(provider: Provider, reason: str) -> CoderEvent:
    return CoderEvent(type="cancelled", provider=provider, payload={"reason": reason}, raw={"reason": reason})


def done_event(provider: Provider, *, raw: Any = None) -> CoderEvent:
    return CoderEvent(type="done", provider=provider, raw=raw)


def interrupted_events(provider: Provider, reason: str | None) -> list[CoderEvent]:
    """Terminal pair emitted for a run whose cancellation token was aborted."""
    resolved = reason or "Interrupted"
    return [
        cancelled_event(provider, resolved),
        error_event(provider, resolved, code="interrupted", raw={"reason": resolved}),
    ]
