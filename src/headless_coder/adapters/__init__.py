from headless_coder.options import StartOptions
from headless_coder.registry import create_coder, get_adapter_factory, register_adapter

from .base import HeadlessCoder, RunStream, ThreadHandle
from .claude_adapter import ClaudeAdapter, create_headless_claude
from .claude_adapter import create_adapter as create_claude_adapter
from .codex_adapter import CodexAdapter, create_headless_codex
from .codex_adapter import create_adapter as create_codex_adapter
from .gemini_adapter import GeminiAdapter, create_headless_gemini
from .gemini_adapter import create_adapter as create_gemini_adapter

BUILTIN_FACTORIES = (create_codex_adapter, create_claude_adapter, create_gemini_adapter)


def register_builtin_adapters() -> None:
    for factory in BUILTIN_FACTORIES:
        register_adapter(factory)


def get_adapter(name: str, defaults: StartOptions | None = None) -> HeadlessCoder:
    if get_adapter_factory(name) is None:
        register_builtin_adapters()
    return create_coder(name, defaults)


__all__ = [
    "ClaudeAdapter",
    "CodexAdapter",
    "GeminiAdapter",
    "HeadlessCoder",
    "RunStream",
    "ThreadHandle",
    "create_headless_claude",
    "create_headless_codex",
    "create_headless_gemini",
    "get_adapter",
    "register_builtin_adapters",
]
