from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from headless_coder.events import Provider
from headless_coder.options import StartOptions


class CoderSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    soft_kill_delay_ms: int = Field(default=250, ge=0, alias="HEADLESS_CODER_SOFT_KILL_DELAY_MS")
    hard_kill_delay_ms: int = Field(default=1500, ge=0, alias="HEADLESS_CODER_HARD_KILL_DELAY_MS")
    stderr_tail_chars: int = Field(default=4000, ge=0, alias="HEADLESS_CODER_STDERR_TAIL_CHARS")
    stream_line_limit: int = Field(default=8 * 1024 * 1024, ge=1024, alias="HEADLESS_CODER_STREAM_LINE_LIMIT")
    gemini_bin: str = Field(default="gemini", alias="GEMINI_BIN")
    codex_bin: str = Field(default="codex", alias="CODEX_BIN")
    config_path: str = Field(default="config/coders.yaml", alias="HEADLESS_CODER_CONFIG")
    server_host: str = Field(default="127.0.0.1", alias="HEADLESS_CODER_HOST")
    server_port: int = Field(default=4320, ge=1, le=65535, alias="HEADLESS_CODER_PORT")

    @model_validator(mode="after")
    def _check_kill_delays(self) -> CoderSettings:
        if self.hard_kill_delay_ms < self.soft_kill_delay_ms:
            raise ValueError("HEADLESS_CODER_HARD_KILL_DELAY_MS must not be shorter than the soft kill delay")
        return self

    @property
    def soft_kill_delay(self) -> float:
        return self.soft_kill_delay_ms / 1000

    @property
    def hard_kill_delay(self) -> float:
        return self.hard_kill_delay_ms / 1000


class ProviderDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str | None = None
    working_directory: str | None = None
    sandbox_mode: Literal["read-only", "workspace-write", "danger-full-access"] | None = None
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

    def to_start_options(self) -> StartOptions:
        return StartOptions(**self.model_dump())


class ProvidersFile(BaseModel):
    providers: dict[Provider, ProviderDefaults] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> CoderSettings:
    return CoderSettings()


def load_provider_defaults(path: str | Path) -> dict[Provider, StartOptions]:
    """Reads per-provider start options from YAML; a missing file means no defaults."""
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        return {}

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if not raw:
        return {}
    try:
        parsed = ProvidersFile.model_validate(raw)
    except ValidationError as error:
        raise ValueError(f"invalid coders config at {config_path}: {error}") from error

    defaults: dict[Provider, StartOptions] = {}
    for provider, entry in parsed.providers.items():
        options = entry.to_start_options()
        if options.working_directory:
            options.working_directory = str(Path(options.working_directory).expanduser())
        defaults[provider] = options
    return defaults
