from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from headless_coder.adapters.gemini_adapter import (
    GeminiAdapter,
    build_gemini_args,
    normalize_gemini_event,
    parse_gemini_json,
)
from headless_coder.cancellation import CancellationToken
from headless_coder.errors import CoderRunError, InterruptedRunError, RunInProgressError
from headless_coder.options import RunOptions, StartOptions
from headless_coder.session import SessionEntry, parse_session_list
from headless_coder.settings import CoderSettings

FAKE_GEMINI = """
import json, os, sys, time
args = sys.argv[1:]
here = os.path.dirname(os.path.abspath(sys.argv[0]))
if args == ["--list-sessions"]:
    if os.path.exists(os.path.join(here, "slow-sessions")):
        time.sleep(30)
    if os.path.exists(os.path.join(here, "no-sessions")):
        print("No previous sessions found for this project.")
        sys.exit(0)
    print("Available sessions:")
    print("  1. first prompt (2 hours ago) [aaa-111]")
    print("  2. latest prompt (just now) [bbb-222]")
    sys.exit(0)
fmt = args[args.index("--output-format") + 1]
prompt = args[args.index("--prompt") + 1]
resume = args[args.index("--resume") + 1] if "--resume" in args else None
mode = prompt.split(":", 1)[0]
if mode == "sleep":
    print(json.dumps({"type": "init", "session_id": "sess-42"}), flush=True)
    time.sleep(30)
if mode == "fail":
    sys.stderr.write("bad flag")
    sys.exit(2)
session = {} if mode == "anon" else {"session_id": "sess-42"}
if fmt == "json":
    print(json.dumps({"response": "echo:" + prompt, "stats": {"tokens": 5}, "resume": resume, **session}))
else:
    print(json.dumps({"type": "init", "model": "gemini-test", **session}))
    print(json.dumps({"type": "message", "role": "assistant", "content": "hi", "delta": True}))
    print(json.dumps({"type": "result", "status": "success", "stats": {"tokens": 5}}))
"""


def _write_cli(tmp_path: Path) -> str:
    path = tmp_path / "gemini"
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(FAKE_GEMINI), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def _settings() -> CoderSettings:
    return CoderSettings(
        _env_file=None,
        HEADLESS_CODER_SOFT_KILL_DELAY_MS=50,
        HEADLESS_CODER_HARD_KILL_DELAY_MS=500,
    )


def _adapter(tmp_path: Path, **kwargs: Any) -> GeminiAdapter:
    return GeminiAdapter(StartOptions(gemini_binary_path=_write_cli(tmp_path)), settings=_settings(), **kwargs)


def test_build_gemini_args_with_all_options() -> None:
    options = StartOptions(model="gemini-2.5-pro", include_directories=["/a", "/b"], yolo=True)

    args = build_gemini_args(options, "hello", "stream-json", "sess-1")

    assert args == [
        "--output-format",
        "stream-json",
        "--prompt",
        "hello",
        "--model",
        "gemini-2.5-pro",
        "--include-directories",
        "/a,/b",
        "--yolo",
        "--resume",
        "sess-1",
    ]


def test_build_gemini_args_minimal() -> None:
    assert build_gemini_args(StartOptions(), "hi", "json") == ["--output-format", "json", "--prompt", "hi"]


def test_parse_gemini_json_falls_back_to_raw_text() -> None:
    assert parse_gemini_json('{"response": "ok"}') == {"response": "ok"}
    assert parse_gemini_json("plain words") == {"response": "plain words"}


def test_normalize_gemini_events() -> None:
    init = normalize_gemini_event({"type": "init", "session_id": "sid-1", "model": "auto"})
    assert init[0].type == "init"
    assert init[0].payload == {"thread_id": "sid-1", "model": "auto"}

    delta = normalize_gemini_event({"type": "message", "role": "assistant", "content": "he", "delta": True})
    assert delta[0].payload == {"role": "assistant", "text": "he", "delta": True}

    tool_use = normalize_gemini_event(
        {"type": "tool_use", "tool_name": "read_file", "tool_id": "t1", "parameters": {"path": "a.py"}}
    )
    assert tool_use[0].type == "tool_use"
    assert tool_use[0].payload == {"name": "read_file", "call_id": "t1", "args": {"path": "a.py"}}

    tool_result = normalize_gemini_event({"type": "tool_result", "tool_id": "t1", "output": "done", "exit_code": 0})
    assert tool_result[0].type == "tool_result"
    assert tool_result[0].payload["call_id"] == "t1"
    assert tool_result[0].payload["result"] == "done"
    assert tool_result[0].payload["exit_code"] == 0

    warning = normalize_gemini_event({"type": "error", "severity": "warning", "message": "slow"})
    assert warning[0].type == "progress"
    assert warning[0].payload == {"label": "warning", "detail": "slow"}

    error = normalize_gemini_event({"type": "error", "message": "boom", "code": 429})
    assert error[0].type == "error"
    assert error[0].payload["code"] == "429"

    result = normalize_gemini_event({"type": "result", "status": "success", "stats": {"tokens": 1}})
    assert [event.type for event in result] == ["usage", "done"]

    failed = normalize_gemini_event({"type": "result", "status": "error", "error": {"message": "quota"}})
    assert [event.type for event in failed] == ["error"]
    assert failed[0].payload["message"] == "quota"

    unknown = normalize_gemini_event({"type": "checkpoint"})
    assert unknown[0].type == "progress"
    assert unknown[0].payload["label"] == "checkpoint"


def test_parse_session_list() -> None:
    output = "Available sessions:\n  1. fix tests (1 day ago) [abc-1]\n  2. add docs (now) [def-2]\nnoise\n"

    assert parse_session_list(output) == [SessionEntry(index=1, id="abc-1"), SessionEntry(index=2, id="def-2")]


@pytest.mark.asyncio
async def test_run_returns_text_and_persists_session(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    thread = await adapter.start_thread()
    assert thread.id is None

    first = await thread.run("say hi")
    assert first.text == "echo:say hi"
    assert first.thread_id == "sess-42"
    assert first.usage == {"tokens": 5}
    assert first.raw["resume"] is None
    assert thread.id == "sess-42"

    second = await thread.run("again")
    assert second.raw["resume"] == "sess-42"


@pytest.mark.asyncio
async def test_resume_thread_passes_resume_flag(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    thread = await adapter.resume_thread("prior-session")

    result = await thread.run("continue")

    assert result.raw["resume"] == "prior-session"


@pytest.mark.asyncio
async def test_run_without_session_id_adopts_latest_listed_session(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    thread = await adapter.start_thread()

    result = await thread.run("anon:hello")

    assert result.thread_id == "bbb-222"
    assert adapter.get_thread_id(thread) == "bbb-222"


@pytest.mark.asyncio
async def test_run_structured_output_is_extracted(tmp_path: Path) -> None:
    path = tmp_path / "gemini"
    path.write_text(
        f"#!{sys.executable}\n"
        "import json\n"
        "print(json.dumps({'response': 'Here:\\n```json\\n{\"ok\": true}\\n```', 'session_id': 's'}))\n",
        encoding="utf-8",
    )
    path.chmod(0o755)
    adapter = GeminiAdapter(StartOptions(gemini_binary_path=str(path)), settings=_settings())
    thread = await adapter.start_thread()

    result = await thread.run("give json", RunOptions(output_schema={"type": "object"}))

    assert result.json == {"ok": True}


@pytest.mark.asyncio
async def test_run_non_zero_exit_raises(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    with pytest.raises(CoderRunError) as excinfo:
        await thread.run("fail:now")

    assert excinfo.value.exit_code == 2
    assert "bad flag" in str(excinfo.value)


@pytest.mark.asyncio
async def test_run_missing_binary_raises_spawn_failed(tmp_path: Path) -> None:
    adapter = GeminiAdapter(StartOptions(gemini_binary_path=str(tmp_path / "missing")), settings=_settings())
    thread = await adapter.start_thread()

    with pytest.raises(CoderRunError) as excinfo:
        await thread.run("hello")

    assert excinfo.value.code == "spawn_failed"


@pytest.mark.asyncio
async def test_interrupt_during_run_raises_interrupted(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    async def interrupt_later() -> None:
        await asyncio.sleep(0.3)
        await thread.interrupt("user stop")

    interrupter = asyncio.create_task(interrupt_later())
    with pytest.raises(InterruptedRunError) as excinfo:
        await asyncio.wait_for(thread.run("sleep:now"), timeout=10)
    await interrupter

    assert excinfo.value.reason == "user stop"


@pytest.mark.asyncio
async def test_run_streamed_emits_canonical_events(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()

    async with thread.run_streamed("stream please") as stream:
        events = [event async for event in stream]

    assert [event.type for event in events] == ["init", "message", "usage", "done"]
    assert all(event.provider == "gemini" for event in events)
    assert thread.id == "sess-42"


@pytest.mark.asyncio
async def test_external_signal_cancels_stream(tmp_path: Path) -> None:
    thread = await _adapter(tmp_path).start_thread()
    signal = CancellationToken()
    events = []

    async for event in thread.run_streamed("sleep:now", RunOptions(signal=signal)):
        events.append(event)
        if event.type == "init":
            signal.abort("caller gave up")

    assert [event.type for event in events] == ["init", "cancelled", "error"]
    assert events[-1].payload["code"] == "interrupted"
    assert events[-1].payload["message"] == "caller gave up"


@pytest.mark.asyncio
async def test_busy_thread_rejects_second_run_without_spawning(tmp_path: Path) -> None:
    spawned: list[tuple[str, ...]] = []

    async def counting_spawn(*argv: str, **kwargs: Any) -> asyncio.subprocess.Process:
        spawned.append(argv)
        return await asyncio.create_subprocess_exec(*argv, **kwargs)

    adapter = _adapter(tmp_path, spawn=counting_spawn)
    thread = await adapter.start_thread()

    first = thread.run_streamed("stream please")
    with pytest.raises(RunInProgressError):
        thread.run_streamed("second")
    with pytest.raises(RunInProgressError):
        await thread.run("third")
    assert spawned == []

    await first.aclose()

    async with thread.run_streamed("after release") as stream:
        events = [event async for event in stream]
    assert events[-1].type == "done"
    assert len(spawned) == 1


@pytest.mark.asyncio
async def test_start_thread_resume_is_kept_across_runs_without_session_id(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    (tmp_path / "no-sessions").touch()
    thread = await adapter.start_thread(StartOptions(resume="X"))

    first = await thread.run("anon:first")
    second = await thread.run("anon:second")

    assert first.raw["resume"] == "X"
    assert second.raw["resume"] == "X"
    assert adapter.get_thread_id(thread) == "X"


@pytest.mark.asyncio
async def test_streamed_run_then_run_still_resume_start_target(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    (tmp_path / "no-sessions").touch()
    thread = await adapter.start_thread(StartOptions(resume="X"))

    async with thread.run_streamed("anon:first") as stream:
        events = [event async for event in stream]
    result = await thread.run("anon:second")

    assert events[-1].type == "done"
    assert result.raw["resume"] == "X"


@pytest.mark.asyncio
async def test_interrupt_during_session_listing_kills_it(tmp_path: Path) -> None:
    listing_started = asyncio.Event()

    async def watching_spawn(*argv: str, **kwargs: Any) -> asyncio.subprocess.Process:
        process = await asyncio.create_subprocess_exec(*argv, **kwargs)
        if "--list-sessions" in argv:
            listing_started.set()
        return process

    adapter = _adapter(tmp_path, spawn=watching_spawn)
    (tmp_path / "slow-sessions").touch()
    thread = await adapter.start_thread()

    async def interrupt_when_listing() -> None:
        await listing_started.wait()
        await thread.interrupt("stop listing")

    interrupter = asyncio.create_task(interrupt_when_listing())

    async def consume() -> list[Any]:
        async with thread.run_streamed("anon:hello") as stream:
            return [event async for event in stream]

    events = await asyncio.wait_for(consume(), timeout=5)
    await interrupter

    assert events[-1].type == "done"
    assert thread.id is None
