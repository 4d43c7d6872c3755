from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing, suppress
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
from headless_coder.cancellation import CancellationToken
from headless_coder.errors import CoderRunError, InterruptedRunError
from headless_coder.events import (
    CoderEvent,
    Provider,
    RunResult,
    done_event,
    error_event,
    init_event,
    message_event,
    progress_event,
    tool_result_event,
    tool_use_event,
    usage_event,
)
from headless_coder.options import RunOptions, StartOptions
from headless_coder.process_runner import EXIT_GRACE_SEC, ProcessFactory, ProcessRunController, describe_exit
from headless_coder.registry import create_coder, get_adapter_factory, register_adapter
from headless_coder.session import (
    SessionEntry,
    SessionState,
    adopt_latest_session,
    capture_session_metadata,
    needs_session_lookup,
    parse_session_list,
    resolve_resume_target,
)
from headless_coder.settings import CoderSettings, get_settings
from headless_coder.structured import PromptInput, apply_output_schema, extract_json_payload, to_prompt

LOGGER = logging.getLogger(__name__)

CODER_NAME: Provider = "gemini"
SESSION_LIST_TIMEOUT_SEC = 15.0


class GeminiAdapter(HeadlessCoder):
    """Drives the Gemini CLI in headless mode, one process per run."""

    provider: Provider = CODER_NAME

    def __init__(
        self,
        defaults: StartOptions | None = None,
        *,
        settings: CoderSettings | None = None,
        spawn: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self._defaults = defaults or StartOptions()
        self._settings = settings or get_settings()
        self._spawn = spawn

    async def start_thread(self, opts: StartOptions | None = None) -> ThreadHandle:
        options = self._defaults.merged(opts)
        resume = options.resume or None
        state = SessionState(opts=options, id=resume, resume_token=resume)
        return self._create_handle(state)

    async def resume_thread(self, thread_id: str, opts: StartOptions | None = None) -> ThreadHandle:
        options = self._defaults.merged(opts)
        options.resume = thread_id
        state = SessionState(opts=options, id=thread_id, resume_token=thread_id)
        return self._create_handle(state)

    async def run(self, thread: ThreadHandle, prompt: PromptInput, opts: RunOptions | None = None) -> RunResult:
        run_opts = opts or RunOptions()
        state = self._state(thread)
        active = claim_run(state, CODER_NAME, run_opts.signal)
        try:
            controller = self._controller(state, thread, prompt, "json", run_opts, active)
            try:
                outcome = await controller.run_to_completion()
            except OSError as error:
                raise CoderRunError(f"failed to start {controller.label}: {error}", code="spawn_failed") from error
            if outcome.aborted:
                raise InterruptedRunError(outcome.reason)
            if outcome.returncode != 0:
                message = describe_exit(controller.label, outcome.returncode)
                if outcome.stderr:
                    message = f"{message}: {outcome.stderr}"
                raise CoderRunError(message, code="process_exit", exit_code=outcome.returncode, stderr=outcome.stderr)

            parsed = parse_gemini_json(outcome.stdout)
            capture_session_metadata(state, thread, parsed)
            if needs_session_lookup(state):
                await self._refresh_from_session_list(state, thread, active.token)

            text = _first_text(parsed.get("response"), parsed.get("text"), outcome.stdout)
            structured = extract_json_payload(text) if run_opts.output_schema else None
            return RunResult(
                thread_id=state.id,
                text=text,
                json=structured if structured is not None else parsed.get("json"),
                usage=parsed.get("stats"),
                raw=parsed,
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
        return self._state(thread).id

    def interrupt(self, thread: ThreadHandle, reason: str | None = None) -> None:
        abort_current_run(self._state(thread), reason)

    async def close(self, thread: ThreadHandle) -> None:
        abort_current_run(self._state(thread), "Thread closed")

    async def list_sessions(self, options: StartOptions, token: CancellationToken | None = None) -> list[SessionEntry]:
        """Runs ``gemini --list-sessions``; an aborted ``token`` kills the listing."""
        if token is not None and token.aborted:
            return []
        binary = options.gemini_binary_path or self._settings.gemini_bin
        try:
            process = await self._spawn(
                binary,
                "--list-sessions",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.working_directory or None,
            )
        except OSError as error:
            LOGGER.warning("gemini session listing failed to start error=%s", error)
            return []

        communicate = asyncio.ensure_future(process.communicate())
        aborted = asyncio.ensure_future(token.wait()) if token is not None else None
        try:
            await asyncio.wait(
                {communicate, aborted} if aborted is not None else {communicate},
                timeout=SESSION_LIST_TIMEOUT_SEC,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if aborted is not None:
                aborted.cancel()

        if not communicate.done():
            LOGGER.warning(
                "gemini session listing abandoned pid=%s aborted=%s",
                process.pid,
                token.aborted if token is not None else False,
            )
            with suppress(ProcessLookupError):
                process.kill()
            await asyncio.wait({communicate}, timeout=EXIT_GRACE_SEC)
            if not communicate.done():
                communicate.cancel()
                with suppress(asyncio.CancelledError):
                    await communicate
            return []

        stdout, stderr = communicate.result()
        if process.returncode != 0:
            LOGGER.debug("gemini session listing exited rc=%s", process.returncode)
            return []
        output = stdout if stdout.strip() else stderr
        return parse_session_list(output.decode("utf-8", errors="replace"))

    async def _stream(
        self,
        state: SessionState,
        thread: ThreadHandle,
        prompt: PromptInput,
        opts: RunOptions,
        active: ActiveRun,
    ) -> AsyncIterator[CoderEvent]:
        try:
            controller = self._controller(state, thread, prompt, "stream-json", opts, active)
            async with aclosing(controller.stream()) as events:
                async for event in events:
                    if event.type == "done" and needs_session_lookup(state):
                        await self._refresh_from_session_list(state, thread, active.token)
                    yield event
        finally:
            release_run(state, active)

    async def _refresh_from_session_list(
        self,
        state: SessionState,
        thread: ThreadHandle,
        token: CancellationToken,
    ) -> None:
        entries = await self.list_sessions(state.opts, token)
        adopt_latest_session(state, thread, entries)

    def _controller(
        self,
        state: SessionState,
        thread: ThreadHandle,
        prompt: PromptInput,
        output_format: str,
        opts: RunOptions,
        active: ActiveRun,
    ) -> ProcessRunController:
        options = state.opts
        prompt_text = to_prompt(apply_output_schema(prompt, opts.output_schema))
        argv = [
            options.gemini_binary_path or self._settings.gemini_bin,
            *build_gemini_args(options, prompt_text, output_format, resolve_resume_target(state)),
        ]
        return ProcessRunController(
            argv,
            provider=CODER_NAME,
            token=active.token,
            normalize=normalize_gemini_event,
            on_payload=lambda payload: capture_session_metadata(state, thread, payload),
            cwd=options.working_directory,
            env=opts.extra_env,
            soft_kill_delay=self._settings.soft_kill_delay,
            hard_kill_delay=self._settings.hard_kill_delay,
            line_limit=self._settings.stream_line_limit,
            stderr_tail_chars=self._settings.stderr_tail_chars,
            spawn=self._spawn,
        )

    def _create_handle(self, state: SessionState) -> ThreadHandle:
        return ThreadHandle(provider=CODER_NAME, internal=state, id=state.id, coder=self)

    @staticmethod
    def _state(thread: ThreadHandle) -> SessionState:
        if thread.provider != CODER_NAME or not isinstance(thread.internal, SessionState):
            raise ValueError("thread handle was not issued by the gemini adapter")
        return thread.internal


def build_gemini_args(
    options: StartOptions,
    prompt: str,
    output_format: str,
    resume_target: str | None = None,
) -> list[str]:
    args = ["--output-format", output_format, "--prompt", prompt]
    if options.model:
        args.extend(["--model", options.model])
    if options.include_directories:
        args.extend(["--include-directories", ",".join(options.include_directories)])
    if options.yolo:
        args.append("--yolo")
    if resume_target:
        args.extend(["--resume", resume_target])
    return args


def parse_gemini_json(output: str) -> dict[str, Any]:
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError:
        return {"response": output}
    return parsed if isinstance(parsed, dict) else {"response": output}


def normalize_gemini_event(event: dict[str, Any]) -> list[CoderEvent]:
    event_type = event.get("type")

    if event_type == "init":
        return [init_event(CODER_NAME, thread_id=event.get("session_id"), model=event.get("model"), raw=event)]

    if event_type == "message":
        content = event.get("content")
        return [
            message_event(
                CODER_NAME,
                content if isinstance(content, str) else None,
                role=event.get("role") or "assistant",
                delta=bool(event.get("delta")),
                raw=event,
            )
        ]

    if event_type == "tool_use":
        return [
            tool_use_event(
                CODER_NAME,
                _first_text(event.get("tool_name"), event.get("name")) or "tool",
                call_id=_first_text(event.get("tool_id"), event.get("call_id"), event.get("id")),
                args=_first_present(event.get("parameters"), event.get("args"), event.get("input")),
                raw=event,
            )
        ]

    if event_type == "tool_result":
        exit_code = event.get("exit_code")
        return [
            tool_result_event(
                CODER_NAME,
                _first_text(event.get("tool_name"), event.get("name")) or "tool",
                call_id=_first_text(event.get("tool_id"), event.get("call_id"), event.get("id")),
                result=_first_present(event.get("output"), event.get("result"), event.get("response"), event.get("error")),
                exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
                raw=event,
            )
        ]

    if event_type == "error":
        message = _first_text(event.get("message")) or "gemini error"
        if event.get("severity") == "warning":
            return [progress_event(CODER_NAME, "warning", detail=message, raw=event)]
        code = event.get("code")
        return [error_event(CODER_NAME, message, code=str(code) if code is not None else None, raw=event)]

    if event_type == "result":
        events: list[CoderEvent] = []
        if event.get("stats"):
            events.append(usage_event(CODER_NAME, event["stats"], raw=event))
        if event.get("status") == "error":
            error = event.get("error") if isinstance(event.get("error"), dict) else {}
            message = _first_text(error.get("message")) or "gemini run failed"
            events.append(error_event(CODER_NAME, message, code="result_error", raw=event))
        else:
            events.append(done_event(CODER_NAME, raw=event))
        return events

    label = event_type if isinstance(event_type, str) and event_type else "gemini.event"
    return [progress_event(CODER_NAME, label, raw=event)]


def _first_text(*candidates: Any) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def create_adapter(defaults: StartOptions | None = None) -> GeminiAdapter:
    return GeminiAdapter(defaults)


create_adapter.coder_name = CODER_NAME  # type: ignore[attr-defined]


def create_headless_gemini(defaults: StartOptions | None = None) -> HeadlessCoder:
    if get_adapter_factory(CODER_NAME) is None:
        register_adapter(create_adapter)
    return create_coder(CODER_NAME, defaults)
