"""Thread-oriented client over ``codex exec --json``.

Each turn is one ``codex exec`` process. The thread id is opaque: it is only
known once the CLI reports ``thread.started`` and is passed back through
``codex exec resume <id>`` on later turns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from headless_coder.cancellation import HARD_KILL_DELAY_SEC, SOFT_KILL_DELAY_SEC, CancellationToken
from headless_coder.errors import CoderRunError, InterruptedRunError
from headless_coder.options import SandboxMode
from headless_coder.process_runner import (
    DEFAULT_LINE_LIMIT,
    DEFAULT_STDERR_TAIL_CHARS,
    ManagedProcess,
    ProcessFactory,
    describe_exit,
)
from headless_coder.structured import extract_json_payload

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CodexThreadOptions:
    model: str | None = None
    sandbox_mode: SandboxMode | None = None
    working_directory: str | None = None
    skip_git_repo_check: bool | None = None


@dataclass(slots=True)
class CodexTurn:
    items: list[dict[str, Any]] = field(default_factory=list)
    final_response: str = ""
    structured: Any = None
    usage: Any = None


def build_codex_args(
    options: CodexThreadOptions,
    prompt: str,
    *,
    thread_id: str | None = None,
    output_schema_path: str | None = None,
) -> list[str]:
    args = ["exec", "--json"]
    if options.skip_git_repo_check:
        args.append("--skip-git-repo-check")
    if options.model:
        args.extend(["--model", options.model])
    if options.sandbox_mode:
        args.extend(["--sandbox", options.sandbox_mode])
    if options.working_directory:
        args.extend(["--cd", options.working_directory])
    if output_schema_path:
        args.extend(["--output-schema", output_schema_path])
    if thread_id:
        args.extend(["resume", thread_id])
    args.append(prompt)
    return args


class CodexClient:
    def __init__(
        self,
        executable: str = "codex",
        *,
        soft_kill_delay: float = SOFT_KILL_DELAY_SEC,
        hard_kill_delay: float = HARD_KILL_DELAY_SEC,
        line_limit: int = DEFAULT_LINE_LIMIT,
        stderr_tail_chars: int = DEFAULT_STDERR_TAIL_CHARS,
        spawn: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self.executable = executable
        self._process_kwargs: dict[str, Any] = {
            "soft_kill_delay": soft_kill_delay,
            "hard_kill_delay": hard_kill_delay,
            "line_limit": line_limit,
            "stderr_tail_chars": stderr_tail_chars,
            "spawn": spawn,
        }

    def start_thread(self, options: CodexThreadOptions | None = None) -> CodexThread:
        return CodexThread(self, options or CodexThreadOptions())

    def resume_thread(self, thread_id: str, options: CodexThreadOptions | None = None) -> CodexThread:
        return CodexThread(self, options or CodexThreadOptions(), thread_id=thread_id)

    def _process(self, argv: list[str], token: CancellationToken, env: dict[str, str] | None) -> ManagedProcess:
        return ManagedProcess(
            [self.executable, *argv],
            provider="codex",
            token=token,
            env=env,
            **self._process_kwargs,
        )


class StreamedTurn:
    """Lazily started turn; the process is spawned on first iteration of ``events``."""

    def __init__(self, events: AsyncIterator[dict[str, Any]]) -> None:
        self.events = events


class CodexThread:
    def __init__(self, client: CodexClient, options: CodexThreadOptions, thread_id: str | None = None) -> None:
        self._client = client
        self._options = options
        self._id = thread_id

    @property
    def id(self) -> str | None:
        return self._id

    @property
    def options(self) -> CodexThreadOptions:
        return self._options

    async def run_streamed(
        self,
        prompt: str,
        *,
        output_schema: dict[str, Any] | None = None,
        signal: CancellationToken | None = None,
        env: dict[str, str] | None = None,
    ) -> StreamedTurn:
        return StreamedTurn(self._events(prompt, output_schema, signal or CancellationToken(), env))

    async def run(
        self,
        prompt: str,
        *,
        output_schema: dict[str, Any] | None = None,
        signal: CancellationToken | None = None,
        env: dict[str, str] | None = None,
    ) -> CodexTurn:
        turn = CodexTurn()
        failure: CoderRunError | None = None
        streamed = await self.run_streamed(prompt, output_schema=output_schema, signal=signal, env=env)
        try:
            async with aclosing(streamed.events) as events:
                async for event in events:
                    event_type = event.get("type")
                    if event_type == "item.completed":
                        item = event.get("item") if isinstance(event.get("item"), dict) else {}
                        turn.items.append(item)
                        if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                            turn.final_response = item["text"]
                        if turn.structured is None:
                            turn.structured = structured_from_item(item)
                    elif event_type == "turn.completed":
                        turn.usage = event.get("usage")
                        if turn.structured is None:
                            turn.structured = structured_from_turn(event)
                    elif event_type == "turn.failed" and failure is None:
                        error = event.get("error") if isinstance(event.get("error"), dict) else {}
                        failure = CoderRunError(error.get("message") or "Codex turn failed", code="turn_failed")
        except InterruptedRunError:
            raise
        except CoderRunError as error:
            if failure is None:
                raise
            raise failure from error
        if failure is not None:
            raise failure

        if output_schema and turn.structured is None:
            turn.structured = extract_json_payload(turn.final_response)
        return turn

    async def _events(
        self,
        prompt: str,
        output_schema: dict[str, Any] | None,
        token: CancellationToken,
        env: dict[str, str] | None,
    ) -> AsyncIterator[dict[str, Any]]:
        schema_path = _write_schema(output_schema) if output_schema else None
        process = self._client._process(
            build_codex_args(self._options, prompt, thread_id=self._id, output_schema_path=schema_path),
            token,
            env,
        )
        try:
            try:
                await process.start()
            except OSError as error:
                raise CoderRunError(f"failed to start {process.label}: {error}", code="spawn_failed") from error

            while not token.aborted:
                payload = await process.read_payload()
                if payload is None:
                    break
                if payload.get("type") == "thread.started":
                    thread_id = payload.get("thread_id")
                    if isinstance(thread_id, str) and thread_id:
                        self._id = thread_id
                yield payload

            returncode = await process.wait()
            if token.aborted:
                raise InterruptedRunError(token.reason)
            if returncode != 0:
                stderr = process.stderr_text
                message = describe_exit(process.label, returncode)
                if stderr:
                    message = f"{message}: {stderr}"
                raise CoderRunError(message, code="process_exit", exit_code=returncode, stderr=stderr)
        finally:
            await process.close()
            if schema_path is not None:
                with suppress(OSError):
                    os.unlink(schema_path)


def structured_from_item(item: dict[str, Any]) -> Any:
    return _first_structured(
        item.get("output_json"),
        item.get("json"),
        item.get("output"),
        item.get("response_json"),
        item.get("structured"),
        item.get("data"),
    )


def structured_from_turn(event: dict[str, Any]) -> Any:
    return _first_structured(
        event.get("output_json"),
        event.get("json"),
        event.get("result"),
        event.get("output"),
        event.get("response_json"),
    )


def _first_structured(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate and isinstance(candidate, (dict, list)):
            return candidate
    return None


def _write_schema(schema: dict[str, Any]) -> str:
    handle = tempfile.NamedTemporaryFile("w", suffix=".json", prefix="codex-schema-", delete=False, encoding="utf-8")
    with handle:
        json.dump(schema, handle)
    LOGGER.debug("wrote codex output schema path=%s", handle.name)
    return handle.name
