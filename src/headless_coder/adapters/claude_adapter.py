from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ClaudeSDKError
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from headless_coder.adapters.base import (
    ActiveRun,
    HeadlessCoder,
    RunStream,
    ThreadHandle,
    abort_current_run,
    claim_run,
    release_run,
)
from headless_coder.errors import CoderRunError, InterruptedRunError
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
from headless_coder.registry import create_coder, get_adapter_factory, register_adapter
from headless_coder.stream_runner import StreamRunController
from headless_coder.structured import PromptInput, apply_output_schema, extract_json_payload, to_prompt

LOGGER = logging.getLogger(__name__)

CODER_NAME: Provider = "claude"

ClientFactory = Callable[[ClaudeAgentOptions], Any]


@dataclass(slots=True)
class ClaudeState:
    opts: StartOptions
    session_id: str
    resume: bool = False
    current_run: ActiveRun | None = None


class ClaudeAdapter(HeadlessCoder):
    """Runs Claude Agent SDK sessions; one ``ClaudeSDKClient`` connection per run.

    Interrupts go through ``ClaudeSDKClient.interrupt()`` and the response
    stream is consumed in the caller's task, which the SDK's anyio cancel
    scopes require.
    """

    provider: Provider = CODER_NAME

    def __init__(self, defaults: StartOptions | None = None, *, client_factory: ClientFactory | None = None) -> None:
        self._defaults = defaults or StartOptions()
        self._client_factory: ClientFactory = client_factory or (lambda options: ClaudeSDKClient(options=options))

    async def start_thread(self, opts: StartOptions | None = None) -> ThreadHandle:
        options = self._defaults.merged(opts)
        state = ClaudeState(opts=options, session_id=options.resume or str(uuid.uuid4()), resume=bool(options.resume))
        return self._create_handle(state)

    async def resume_thread(self, thread_id: str, opts: StartOptions | None = None) -> ThreadHandle:
        state = ClaudeState(opts=self._defaults.merged(opts), session_id=thread_id, resume=True)
        return self._create_handle(state)

    async def run(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunResult:
        run_opts = opts or RunOptions()
        state = self._state(thread)
        active = claim_run(state, CODER_NAME, run_opts.signal)
        last_text = ""
        final: ResultMessage | None = None
        try:
            try:
                source = await self._open(state, prompt, run_opts, active)
                async with aclosing(source) as messages:
                    async for message in messages:
                        self._capture_session(state, thread, message)
                        if isinstance(message, AssistantMessage):
                            last_text = assistant_text(message) or last_text
                        elif isinstance(message, ResultMessage):
                            final = message
                        if active.token.aborted:
                            break
            except ClaudeSDKError as error:
                if active.token.aborted:
                    raise InterruptedRunError(active.token.reason) from error
                raise CoderRunError(str(error), code="backend_error") from error

            if active.token.aborted:
                raise InterruptedRunError(active.token.reason)
            if final is not None and result_indicates_error(final):
                raise CoderRunError(result_error_message(final), code="result_error")

            structured = extract_json_payload(last_text) if run_opts.output_schema else None
            return RunResult(
                thread_id=state.session_id,
                text=last_text,
                json=structured,
                usage=final.usage if final is not None else None,
                raw=final,
            )
        finally:
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
        return self._state(thread).session_id

    def interrupt(self, thread: ThreadHandle, reason: str | None = None) -> None:
        abort_current_run(self._state(thread), reason)

    async def close(self, thread: ThreadHandle) -> None:
        abort_current_run(self._state(thread), "Thread closed")

    def build_options(self, state: ClaudeState, run_opts: RunOptions) -> ClaudeAgentOptions:
        opts = state.opts
        permission_mode = opts.permission_mode or ("bypassPermissions" if opts.yolo else None)
        return ClaudeAgentOptions(
            cwd=opts.working_directory,
            allowed_tools=list(opts.allowed_tools or []),
            mcp_servers=dict(opts.mcp_servers or {}),
            continue_conversation=bool(opts.continue_session),
            resume=state.session_id if state.resume else None,
            fork_session=bool(opts.fork_session),
            include_partial_messages=run_opts.stream_partial_messages,
            model=opts.model,
            permission_mode=permission_mode,
            permission_prompt_tool_name=opts.permission_prompt_tool_name,
            env=dict(run_opts.extra_env),
        )

    async def _stream(
        self,
        state: ClaudeState,
        thread: ThreadHandle,
        prompt: PromptInput,
        opts: RunOptions,
        active: ActiveRun,
    ) -> AsyncIterator[CoderEvent]:
        controller = StreamRunController(
            lambda: self._open(state, prompt, opts, active),
            provider=CODER_NAME,
            token=active.token,
            normalize=normalize_claude_message,
            on_native=lambda message: self._capture_session(state, thread, message),
        )
        try:
            async with aclosing(controller.stream()) as events:
                async for event in events:
                    yield event
        finally:
            release_run(state, active)

    async def _open(
        self,
        state: ClaudeState,
        prompt: PromptInput,
        opts: RunOptions,
        active: ActiveRun,
    ) -> AsyncIterator[Any]:
        client = self._client_factory(self.build_options(state, opts))
        await client.connect()
        stop_interrupt = active.token.add_callback(lambda reason: _schedule_interrupt(client, reason))
        try:
            await client.query(to_prompt(apply_output_schema(prompt, opts.output_schema)))
        except BaseException:
            stop_interrupt()
            await _disconnect(client)
            raise
        return _responses(client, stop_interrupt)

    @staticmethod
    def _capture_session(state: ClaudeState, thread: ThreadHandle, message: Any) -> None:
        session_id = None
        if isinstance(message, SystemMessage) and message.subtype == "init":
            session_id = message.data.get("session_id")
        elif isinstance(message, ResultMessage):
            session_id = message.session_id
        if not isinstance(session_id, str) or not session_id:
            return
        if session_id != state.session_id:
            LOGGER.debug("claude session reported session_id=%s previous=%s", session_id, state.session_id)
        state.session_id = session_id
        state.resume = True
        thread.id = session_id

    def _create_handle(self, state: ClaudeState) -> ThreadHandle:
        return ThreadHandle(provider=CODER_NAME, internal=state, id=state.session_id, coder=self)

    @staticmethod
    def _state(thread: ThreadHandle) -> ClaudeState:
        if thread.provider != CODER_NAME or not isinstance(thread.internal, ClaudeState):
            raise ValueError("thread handle was not issued by the claude adapter")
        return thread.internal


async def _responses(client: Any, stop_interrupt: Callable[[], None]) -> AsyncIterator[Any]:
    try:
        async with aclosing(client.receive_response()) as messages:
            async for message in messages:
                yield message
    finally:
        stop_interrupt()
        await _disconnect(client)


async def _disconnect(client: Any) -> None:
    try:
        await client.disconnect()
    except Exception as error:
        LOGGER.warning("claude client disconnect failed error=%s", error)


def _schedule_interrupt(client: Any, reason: str) -> None:
    LOGGER.info("interrupting claude run reason=%s", reason)
    task = asyncio.ensure_future(client.interrupt())

    def _log_failure(done: asyncio.Future[Any]) -> None:
        if done.cancelled():
            return
        error = done.exception()
        if error is not None:
            LOGGER.warning("claude interrupt failed error=%s", error)

    task.add_done_callback(_log_failure)


def assistant_text(message: AssistantMessage) -> str:
    parts = [block.text for block in message.content if isinstance(block, TextBlock) and block.text]
    return "\n".join(parts).strip()


def result_indicates_error(result: ResultMessage) -> bool:
    return bool(result.is_error or str(result.subtype or "").startswith("error"))


def result_error_message(result: ResultMessage) -> str:
    return f"Claude run failed: {result.result or result.subtype or 'unknown error'}"


def normalize_claude_message(message: Any) -> list[CoderEvent]:
    if isinstance(message, SystemMessage):
        if message.subtype == "init":
            return [
                init_event(
                    CODER_NAME,
                    thread_id=message.data.get("session_id"),
                    model=message.data.get("model"),
                    raw=message,
                )
            ]
        return [progress_event(CODER_NAME, f"system:{message.subtype}", raw=message)]

    if isinstance(message, StreamEvent):
        event = message.event if isinstance(message.event, dict) else {}
        delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
        if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            return [message_event(CODER_NAME, delta.get("text"), delta=True, raw=message)]
        return [progress_event(CODER_NAME, f"stream_event:{event.get('type') or 'event'}", raw=message)]

    if isinstance(message, AssistantMessage):
        events: list[CoderEvent] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                events.append(message_event(CODER_NAME, block.text, raw=message))
            elif isinstance(block, ThinkingBlock):
                events.append(progress_event(CODER_NAME, "thinking", detail=block.thinking, raw=message))
            elif isinstance(block, ToolUseBlock):
                events.append(tool_use_event(CODER_NAME, block.name, call_id=block.id, args=block.input, raw=message))
            elif isinstance(block, ToolResultBlock):
                events.append(_tool_result(block, message))
        return events or [progress_event(CODER_NAME, "assistant", raw=message)]

    if isinstance(message, UserMessage):
        if isinstance(message.content, str):
            return [progress_event(CODER_NAME, "user", detail=message.content, raw=message)]
        results = [_tool_result(block, message) for block in message.content if isinstance(block, ToolResultBlock)]
        return results or [progress_event(CODER_NAME, "user", raw=message)]

    if isinstance(message, ResultMessage):
        if result_indicates_error(message):
            return [error_event(CODER_NAME, result_error_message(message), code="result_error", raw=message)]
        events = []
        if message.usage:
            events.append(usage_event(CODER_NAME, message.usage, raw=message))
        events.append(done_event(CODER_NAME, raw=message))
        return events

    if isinstance(message, dict):
        message_type = str(message.get("type") or "")
        if "permission" in message_type:
            return [permission_event(CODER_NAME, request=message.get("request"), decision=message.get("decision"), raw=message)]
        return [progress_event(CODER_NAME, message_type or "claude.event", raw=message)]

    return [progress_event(CODER_NAME, type(message).__name__, raw=message)]


def _tool_result(block: ToolResultBlock, message: Any) -> CoderEvent:
    return tool_result_event(
        CODER_NAME,
        "tool",
        call_id=block.tool_use_id,
        result=block.content,
        exit_code=1 if block.is_error else None,
        raw=message,
    )


def create_adapter(defaults: StartOptions | None = None) -> ClaudeAdapter:
    return ClaudeAdapter(defaults)


create_adapter.coder_name = CODER_NAME  # type: ignore[attr-defined]


def create_headless_claude(defaults: StartOptions | None = None) -> HeadlessCoder:
    if get_adapter_factory(CODER_NAME) is None:
        register_adapter(create_adapter)
    return create_coder(CODER_NAME, defaults)
