"""Uniform headless driver for the gemini, claude and codex coding agents."""

from headless_coder.adapters import (
    ClaudeAdapter,
    CodexAdapter,
    GeminiAdapter,
    HeadlessCoder,
    RunStream,
    ThreadHandle,
    create_headless_claude,
    create_headless_codex,
    create_headless_gemini,
    get_adapter,
    register_builtin_adapters,
)
from headless_coder.cancellation import CancellationToken
from headless_coder.errors import CoderError, CoderRunError, InterruptedRunError, RunInProgressError
from headless_coder.events import CoderEvent, Provider, RunResult
from headless_coder.options import RunOptions, StartOptions
from headless_coder.registry import create_coder, get_adapter_factory, register_adapter, unregister_adapter

__all__ = [
    "CancellationToken",
    "ClaudeAdapter",
    "CodexAdapter",
    "CoderError",
    "CoderEvent",
    "CoderRunError",
    "GeminiAdapter",
    "HeadlessCoder",
    "InterruptedRunError",
    "Provider",
    "RunInProgressError",
    "RunOptions",
    "RunResult",
    "RunStream",
    "StartOptions",
    "ThreadHandle",
    "create_coder",
    "create_headless_claude",
    "create_headless_codex",
    "create_headless_gemini",
    "get_adapter",
    "get_adapter_factory",
    "register_adapter",
    "register_builtin_adapters",
    "unregister_adapter",
]
