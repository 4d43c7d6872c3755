from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator

from headless_coder.adapters.base import (
    ActiveRun,
    HeadlessCoder,
    RunStream,
    ThreadHandle,
    abort_current_run,
    claim_run,
    release_run,
)
from headless_coder.codex_client import CodexClient, CodexThread, CodexThreadOptions
from headless_coder.errors import InterruptedRunError
from headless_coder.events import (
    CoderEvent,
    Provider,
    RunResult,
    done_event,
    error_event,
    init_event,
    message_event,
    permission_event,
    progress_event,
    tool_result_event,
    tool_use_event,
    usage_event,
)
from headless_coder.options import RunOptions, StartOptions
from headless_coder.process_runner import ProcessFactory
from headless_coder.registry import create_coder, get_adapter_factory, register_adapter
from headless_coder.settings import CoderSettings, get_settings
from headless_coder.stream_runner import StreamRunController
from headless_coder.structured import PromptInput, extract_json_payload, to_prompt

LOGGER = logging.getLogger(__name__)

CODER_NAME: Provider = "codex"

_TOOL_ITEM_TYPES = frozenset({"command_execution", "mcp_tool_call"})


@dataclass(slots=True)
class CodexState:
    options: CodexThreadOptions
    executable: str | None = None
    id: str | None = None
    current_run: ActiveRun | None = None


class CodexAdapter(HeadlessCoder):
    """Runs Codex turns through :class:`CodexClient`; cancellation rides on the client's signal."""

    provider: Provider = CODER_NAME

    def __init__(
        self,
        defaults: StartOptions | None = None,
        *,
        settings: CoderSettings | None = None,
        spawn: ProcessFactory | None = None,
    ) -> None:
        self._defaults = defaults or StartOptions()
        self._settings = settings or get_settings()
        self._spawn = spawn

    async def start_thread(self, opts: StartOptions | None = None) -> ThreadHandle:
        options = self._defaults.merged(opts)
        return self._create_handle(self._state_from(options))

    async def resume_thread(self, thread_id: str, opts: StartOptions | None = None) -> ThreadHandle:
        state = self._state_from(self._defaults.merged(opts))
        state.id = thread_id
        return self._create_handle(state)

    async def run(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunResult:
        run_opts = opts or RunOptions()
        state = self._state(thread)
        active = claim_run(state, CODER_NAME, run_opts.signal)
        codex_thread = self._codex_thread(state)
        try:
            try:
                turn = await codex_thread.run(
                    to_prompt(prompt, upper_roles=True),
                    output_schema=run_opts.output_schema,
                    signal=active.token,
                    env=run_opts.extra_env or None,
                )
            except InterruptedRunError as error:
                raise InterruptedRunError(active.token.reason or error.reason) from error
            self._adopt_thread_id(state, thread, codex_thread.id)
            structured = turn.structured if turn.structured is not None else extract_json_payload(turn.final_response)
            return RunResult(
                thread_id=state.id,
                text=turn.final_response or None,
                json=structured,
                usage=turn.usage,
                raw=turn,
            )
        finally:
            self._adopt_thread_id(state, thread, codex_thread.id)
            release_run(state, active)

    def run_streamed(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunStream:
        run_opts = opts or RunOptions()
        state = self._state(thread)
        active = claim_run(state, CODER_NAME, run_opts.signal)
        return RunStream(
            self._stream(state, thread, prompt, run_opts, active),
            lambda: release_run(state, active),
        )

    def get_thread_id(self, thread: ThreadHandle) -> str | None:
        return self._state(thread).id

    def interrupt(self, thread: ThreadHandle, reason: str | None = None) -> None:
        abort_current_run(self._state(thread), reason)

    async def close(self, thread: ThreadHandle) -> None:
        abort_current_run(self._state(thread), "Thread closed")

    async def _stream(
        self,
        state: CodexState,
        thread: ThreadHandle,
        prompt: PromptInput,
        opts: RunOptions,
        active: ActiveRun,
    ) -> AsyncIterator[CoderEvent]:
        codex_thread = self._codex_thread(state)

        async def open_events() -> AsyncIterator[dict[str, Any]]:
            turn = await codex_thread.run_streamed(
                to_prompt(prompt, upper_roles=True),
                output_schema=opts.output_schema,
                signal=active.token,
                env=opts.extra_env or None,
            )
            return turn.events

        def on_native(native: dict[str, Any]) -> None:
            if native.get("type") == "thread.started":
                self._adopt_thread_id(state, thread, codex_thread.id)

        controller = StreamRunController(
            open_events,
            provider=CODER_NAME,
            token=active.token,
            normalize=normalize_codex_event,
            on_native=on_native,
        )
        try:
            async with aclosing(controller.stream()) as events:
                async for event in events:
                    yield event
        finally:
            self._adopt_thread_id(state, thread, codex_thread.id)
            release_run(state, active)

    def _codex_thread(self, state: CodexState) -> CodexThread:
        kwargs: dict[str, Any] = {
            "soft_kill_delay": self._settings.soft_kill_delay,
            "hard_kill_delay": self._settings.hard_kill_delay,
            "line_limit": self._settings.stream_line_limit,
            "stderr_tail_chars": self._settings.stderr_tail_chars,
        }
        if self._spawn is not None:
            kwargs["spawn"] = self._spawn
        client = CodexClient(state.executable or self._settings.codex_bin, **kwargs)
        if state.id:
            return client.resume_thread(state.id, state.options)
        return client.start_thread(state.options)

    @staticmethod
    def _adopt_thread_id(state: CodexState, thread: ThreadHandle, thread_id: str | None) -> None:
        if thread_id and thread_id != state.id:
            LOGGER.info("codex thread started thread_id=%s", thread_id)
            state.id = thread_id
            thread.id = thread_id

    @staticmethod
    def _state_from(options: StartOptions) -> CodexState:
        return CodexState(
            options=CodexThreadOptions(
                model=options.model,
                sandbox_mode=options.sandbox_mode,
                working_directory=options.working_directory,
                skip_git_repo_check=options.skip_git_repo_check,
            ),
            executable=options.codex_executable_path,
        )

    def _create_handle(self, state: CodexState) -> ThreadHandle:
        return ThreadHandle(provider=CODER_NAME, internal=state, id=state.id, coder=self)

    @staticmethod
    def _state(thread: ThreadHandle) -> CodexState:
        if thread.provider != CODER_NAME or not isinstance(thread.internal, CodexState):
            raise ValueError("thread handle was not issued by the codex adapter")
        return thread.internal


def normalize_codex_event(event: dict[str, Any]) -> list[CoderEvent]:
    event_type = event.get("type")
    item = event.get("item") if isinstance(event.get("item"), dict) else {}
    item_type = item.get("type")

    if event_type == "thread.started":
        return [init_event(CODER_NAME, thread_id=event.get("thread_id"), raw=event)]

    if event_type == "turn.started":
        return [progress_event(CODER_NAME, "turn.started", raw=event)]

    if isinstance(event_type, str) and event_type.startswith("permission."):
        decision = None
        if event_type.endswith("granted"):
            decision = "granted"
        elif event_type.endswith("denied"):
            decision = "denied"
        return [
            permission_event(
                CODER_NAME,
                request=event.get("permission") if event.get("permission") is not None else event.get("request"),
                decision=decision,
                raw=event,
            )
        ]

    if event_type == "item.delta":
        delta = event.get("delta")
        if item_type == "agent_message":
            text = delta if isinstance(delta, str) else item.get("text")
            return [message_event(CODER_NAME, text, delta=True, raw=event)]
        return [
            progress_event(
                CODER_NAME,
                f"item.delta:{item_type or 'event'}",
                detail=delta if isinstance(delta, str) else None,
                raw=event,
            )
        ]

    if event_type == "item.started" and item_type in _TOOL_ITEM_TYPES:
        return [tool_use_event(CODER_NAME, _tool_name(item), call_id=item.get("id"), args=_tool_args(item), raw=event)]

    if event_type == "item.completed":
        if item_type == "agent_message":
            return [message_event(CODER_NAME, item.get("text"), raw=event)]
        if item_type in _TOOL_ITEM_TYPES:
            exit_code = item.get("exit_code")
            return [
                tool_result_event(
                    CODER_NAME,
                    _tool_name(item),
                    call_id=item.get("id"),
                    result=_tool_output(item),
                    exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
                    raw=event,
                )
            ]
        return [progress_event(CODER_NAME, f"item.completed:{item_type or 'event'}", detail=_item_text(item), raw=event)]

    if event_type == "tool_use":
        return [tool_use_event(CODER_NAME, item.get("name") or "tool", call_id=item.get("id"), args=item.get("input"), raw=event)]

    if event_type == "tool_result":
        exit_code = item.get("exit_code")
        return [
            tool_result_event(
                CODER_NAME,
                item.get("name") or "tool",
                call_id=item.get("id"),
                result=item.get("output"),
                exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
                raw=event,
            )
        ]

    if event_type == "turn.completed":
        events: list[CoderEvent] = []
        if event.get("usage") is not None:
            events.append(usage_event(CODER_NAME, event["usage"], raw=event))
        events.append(done_event(CODER_NAME, raw=event))
        return events

    if event_type == "turn.failed":
        error = event.get("error") if isinstance(event.get("error"), dict) else {}
        return [error_event(CODER_NAME, error.get("message") or "Codex turn failed", code="turn.failed", raw=event)]

    if event_type == "error":
        return [error_event(CODER_NAME, event.get("message") or "codex error", code="codex_error", raw=event)]

    label = event_type if isinstance(event_type, str) and event_type else "codex.event"
    return [progress_event(CODER_NAME, label, raw=event)]


def _tool_name(item: dict[str, Any]) -> str:
    if item.get("type") == "mcp_tool_call":
        server = item.get("server")
        tool = item.get("tool") or item.get("name") or "tool"
        return f"{server}.{tool}" if server else str(tool)
    return "shell"


def _tool_args(item: dict[str, Any]) -> Any:
    if item.get("type") == "command_execution":
        return {"command": _command_text(item)}
    return item.get("arguments") if item.get("arguments") is not None else item.get("input")


def _tool_output(item: dict[str, Any]) -> Any:
    if item.get("type") == "command_execution":
        return item.get("aggregated_output", "")
    for key in ("result", "output", "error"):
        if item.get(key) is not None:
            return item[key]
    return None


def _command_text(item: dict[str, Any]) -> str:
    command = item.get("command")
    if isinstance(command, str):
        return command
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    return ""


def _item_text(item: dict[str, Any]) -> str | None:
    text = item.get("text")
    if isinstance(text, str):
        return text
    content = item.get("content")
    if not isinstance(content, list):
        return None
    parts = [piece["text"] for piece in content if isinstance(piece, dict) and isinstance(piece.get("text"), str)]
    return "\n".join(parts) or None


def create_adapter(defaults: StartOptions | None = None) -> CodexAdapter:
    return CodexAdapter(defaults)


create_adapter.coder_name = CODER_NAME  # type: ignore[attr-defined]


def create_headless_codex(defaults: StartOptions | None = None) -> HeadlessCoder:
    if get_adapter_factory(CODER_NAME) is None:
        register_adapter(create_adapter)
    return create_coder(CODER_NAME, defaults)
