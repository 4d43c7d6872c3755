from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal

from headless_coder.cancellation import CancellationToken

SandboxMode = Literal["read-only", "workspace-write", "danger-full-access"]


@dataclass(slots=True)
class StartOptions:
    model: str | None = None
    working_directory: str | None = None
    sandbox_mode: SandboxMode | None = None
    skip_git_repo_check: bool | None = None
    codex_executable_path: str | None = None
    allowed_tools: list[str] | None = None
    mcp_servers: dict[str, Any] | None = None
    continue_session: bool | None = None
    resume: str | None = None
    fork_session: bool | None = None
    gemini_binary_path: str | None = None
    include_directories: list[str] | None = None
    yolo: bool | None = None
    permission_mode: str | None = None
    permission_prompt_tool_name: str | None = None

    def merged(self, overrides: StartOptions | None) -> StartOptions:
        """Returns a copy with every non-None field of ``overrides`` applied."""
        if overrides is None:
            return replace(self)
        changes = {
            item.name: getattr(overrides, item.name)
            for item in fields(overrides)
            if getattr(overrides, item.name) is not None
        }
        return replace(self, **changes)


@dataclass(slots=True)
class RunOptions:
    output_schema: dict[str, Any] | None = None
    stream_partial_messages: bool = False
    extra_env: dict[str, str] = field(default_factory=dict)
    signal: CancellationToken | None = None
