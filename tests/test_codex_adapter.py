from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from headless_coder.adapters.codex_adapter import CodexAdapter, normalize_codex_event
from headless_coder.codex_client import CodexClient, CodexThreadOptions, build_codex_args
from headless_coder.errors import CoderRunError, InterruptedRunError
from headless_coder.options import RunOptions, StartOptions
from headless_coder.settings import CoderSettings

FAKE_CODEX = """
import json, os, sys, time
args = sys.argv[1:]
prompt = args[-1]
resume = args[args.index("resume") + 1] if "resume" in args else None
schema = None
if "--output-schema" in args:
    with open(args[args.index("--output-schema") + 1], encoding="utf-8") as handle:
        schema = json.load(handle)

def emit(obj):
    print(json.dumps(obj), flush=True)

emit({"type": "thread.started", "thread_id": resume or "th-1"})
emit({"type": "turn.started"})
if prompt.startswith("sleep"):
    time.sleep(30)
if prompt.startswith("crash"):
    sys.stderr.write("panic")
    sys.exit(3)
if prompt.startswith("failturn"):
    emit({"type": "turn.failed", "error": {"message": "rate limited"}})
    sys.exit(1)
if prompt.startswith(("exitafterdone", "linger")):
    emit({"type": "item.completed", "item": {"id": "m1", "type": "agent_message", "text": "echo:" + prompt}})
    emit({"type": "turn.completed", "usage": {"input_tokens": 1, "output_tokens": 1}})
    sys.stdout.flush()
    os.close(1)
    if prompt.startswith("linger"):
        time.sleep(0.6)
        with open(os.path.join(os.path.dirname(os.path.abspath(sys.argv[0])), "persisted"), "w") as handle:
            handle.write(resume or "th-1")
        os._exit(0)
    time.sleep(0.1)
    os._exit(1)
emit({"type": "item.started", "item": {"id": "c1", "type": "command_execution", "command": "ls", "status": "in_progress"}})
emit({"type": "item.completed", "item": {"id": "c1", "type": "command_execution", "command": "ls", "aggregated_output": "a.py", "exit_code": 0}})
text = json.dumps({"schema": schema, "args": args}) if schema else "echo:" + prompt
emit({"type": "item.completed", "item": {"id": "m1", "type": "agent_message", "text": text}})
emit({"type": "turn.completed", "usage": {"input_tokens": 3, "output_tokens": 4, "resumed_from": resume}})
"""


def _write_cli(tmp_path: Path) -> str:
    path = tmp_path / "codex"
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(FAKE_CODEX), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def _settings() -> CoderSettings:
    return CoderSettings(
        _env_file=None,
        HEADLESS_CODER_SOFT_KILL_DELAY_MS=50,
        HEADLESS_CODER_HARD_KILL_DELAY_MS=500,
    )


def _adapter(tmp_path: Path) -> CodexAdapter:
    return CodexAdapter(StartOptions(codex_executable_path=_write_cli(tmp_path)), settings=_settings())


def test_build_codex_args_new_thread() -> None:
    options = CodexThreadOptions(
        model="gpt-5",
        sandbox_mode="workspace-write",
        working_directory="/repo",
        skip_git_repo_check=True,
    )

    assert build_codex_args(options, "hello") == [
        "exec",
        "--json",
        "--skip-git-repo-check",
        "--model",
        "gpt-5",
        "--sandbox",
        "workspace-write",
        "--cd",
        "/repo",
        "hello",
    ]


def test_build_codex_args_resume_with_schema() -> None:
    args = build_codex_args(CodexThreadOptions(), "continue", thread_id="th-9", output_schema_path="/tmp/s.json")

    assert args == ["exec", "--json", "--output-schema", "/tmp/s.json", "resume", "th-9", "continue"]


def test_normalize_codex_events() -> None:
    started = normalize_codex_event({"type": "thread.started", "thread_id": "th-1"})
    assert started[0].type == "init"
    assert started[0].payload["thread_id"] == "th-1"

    turn = normalize_codex_event({"type": "turn.started"})
    assert turn[0].type == "progress"
    assert turn[0].payload["label"] == "turn.started"

    granted = normalize_codex_event({"type": "permission.granted", "permission": {"tool": "shell"}})
    assert granted[0].type == "permission"
    assert granted[0].payload == {"request": {"tool": "shell"}, "decision": "granted"}

    delta = normalize_codex_event({"type": "item.delta", "item": {"type": "agent_message"}, "delta": "He"})
    assert delta[0].type == "message"
    assert delta[0].payload == {"role": "assistant", "text": "He", "delta": True}

    command_started = normalize_codex_event(
        {"type": "item.started", "item": {"id": "c1", "type": "command_execution", "command": ["ls", "-la"]}}
    )
    assert command_started[0].type == "tool_use"
    assert command_started[0].payload == {"name": "shell", "call_id": "c1", "args": {"command": "ls -la"}}

    command_done = normalize_codex_event(
        {
            "type": "item.completed",
            "item": {"id": "c1", "type": "command_execution", "aggregated_output": "ok", "exit_code": 0},
        }
    )
    assert command_done[0].type == "tool_result"
    assert command_done[0].payload["result"] == "ok"
    assert command_done[0].payload["exit_code"] == 0

    message = normalize_codex_event({"type": "item.completed", "item": {"type": "agent_message", "text": "Done"}})
    assert message[0].type == "message"
    assert message[0].payload["text"] == "Done"
    assert message[0].payload["delta"] is False

    reasoning = normalize_codex_event({"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}})
    assert reasoning[0].type == "progress"
    assert reasoning[0].payload == {"label": "item.completed:reasoning", "detail": "thinking"}

    completed = normalize_codex_event({"type": "turn.completed", "usage": {"input_tokens": 1}})
    assert [event.type for event in completed] == ["usage", "done"]

    failed = normalize_codex_event({"type": "turn.failed", "error": {"message": "quota"}})
    assert failed[0].type == "error"
    assert failed[0].payload["code"] == "turn.failed"
    assert failed[0].payload["message"] == "quota"

    other = normalize_codex_event({"type": "session.configured"})
    assert other[0].type == "progress"
    assert other[0].payload["label"] == "session.configured"


@pytest.mark.asyncio
async def test_client_run_collects_turn_and_thread_id(tmp_path: Path) -> None:
    client = CodexClient(_write_cli(tmp_path))
    thread = client.start_thread()
    assert thread.id is None

    turn = await thread.run("hello")

    assert thread.id == "th-1"
    assert turn.final_response == "echo:hello"
    assert turn.usage["input_tokens"] == 3
    assert [item["type"] for item in turn.items] == ["command_execution", "agent_message"]


@pytest.mark.asyncio
async def test_client_writes_and_removes_output_schema_file(tmp_path: Path) -> None:
    schema = {"type": "object", "properties": {"ok": {"type": "boolean"}}}
    thread = CodexClient(_write_cli(tmp_path)).start_thread()

    turn = await thread.run("structured", output_schema=schema)

    assert turn.structured["schema"] == schema
    args = turn.structured["args"]
    schema_path = args[args.index("--output-schema") + 1]
    assert not Path(schema_path).exists()


@pytest.mark.asyncio
async def test_client_turn_failed_raises(tmp_path: Path) -> None:
    thread = CodexClient(_write_cli(tmp_path)).start_thread()

    with pytest.raises(CoderRunError) as excinfo:
        await thread.run("failturn")

    assert str(excinfo.value) == "rate limited"


@pytest.mark.asyncio
async def test_adapter_run_maps_result_and_resumes(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    thread = await adapter.start_thread()

    first = await thread.run([{"role": "user", "content": "hi"}])
    assert first.text == "echo:USER: hi"
    assert first.thread_id == "th-1"
    assert thread.id == "th-1"
    assert first.usage["resumed_from"] is None

    second = await thread.run("again")
    assert second.usage["resumed_from"] == "th-1"


@pytest.mark.asyncio
async def test_adapter_run_interrupt_raises_interrupted(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    async def interrupt_later() -> None:
        await asyncio.sleep(0.3)
        await thread.interrupt("enough")

    interrupter = asyncio.create_task(interrupt_later())
    with pytest.raises(InterruptedRunError) as excinfo:
        await asyncio.wait_for(thread.run("sleep"), timeout=10)
    await interrupter

    assert excinfo.value.reason == "enough"


@pytest.mark.asyncio
async def test_adapter_stream_emits_events_and_thread_id(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    thread = await adapter.resume_thread("th-7")

    async with thread.run_streamed("go") as stream:
        events = [event async for event in stream]

    assert [event.type for event in events] == [
        "init",
        "progress",
        "tool_use",
        "tool_result",
        "message",
        "usage",
        "done",
    ]
    assert events[0].payload["thread_id"] == "th-7"
    assert adapter.get_thread_id(thread) == "th-7"


@pytest.mark.asyncio
async def test_adapter_stream_crash_is_error_event(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    events = [event async for event in thread.run_streamed("crash")]

    assert [event.type for event in events] == ["init", "progress", "error"]
    assert events[-1].payload["code"] == "process_exit"
    assert events[-1].payload["exit_code"] == 3
    assert thread.id == "th-1"


@pytest.mark.asyncio
async def test_adapter_stream_interrupt_emits_terminal_pair(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()
    events = []

    async for event in thread.run_streamed("sleep", RunOptions()):
        events.append(event)
        if event.type == "progress":
            await thread.interrupt("stop")

    assert [event.type for event in events] == ["init", "progress", "cancelled", "error"]
    assert events[-1].payload["code"] == "interrupted"


@pytest.mark.asyncio
async def test_adapter_stream_exit_after_turn_completed_is_error(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    async with thread.run_streamed("exitafterdone") as stream:
        events = [event async for event in stream]

    assert [event.type for event in events] == ["init", "progress", "message", "usage", "error"]
    assert events[-1].payload["code"] == "process_exit"
    assert events[-1].payload["exit_code"] == 1
    with pytest.raises(CoderRunError) as excinfo:
        await thread.run("exitafterdone")
    assert excinfo.value.code == "process_exit"


@pytest.mark.asyncio
async def test_adapter_stream_waits_for_cli_to_finish_after_turn_completed(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    async with thread.run_streamed("linger") as stream:
        events = [event async for event in stream]

    assert events[-1].type == "done"
    assert (tmp_path / "persisted").read_text(encoding="utf-8") == "th-1"


@pytest.mark.asyncio
async def test_adapter_stream_turn_failed_keeps_backend_error(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    events = [event async for event in thread.run_streamed("failturn")]

    assert [event.type for event in events] == ["init", "progress", "error"]
    assert events[-1].payload["code"] == "turn.failed"
    assert events[-1].payload["message"] == "rate limited"
