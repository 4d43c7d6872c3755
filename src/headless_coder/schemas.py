from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from headless_coder.settings import ProviderDefaults


class PromptMessageModel(BaseModel):
    role: str = Field(min_length=1)
    content: str


class CreateSessionRequest(BaseModel):
    provider: str = Field(min_length=1)
    resume: Optional[str] = None
    options: ProviderDefaults = Field(default_factory=ProviderDefaults)


class RunRequest(BaseModel):
    prompt: Union[str, list[PromptMessageModel]]
    output_schema: Optional[dict[str, Any]] = None
    stream_partial_messages: bool = False
    extra_env: dict[str, str] = Field(default_factory=dict)

    def prompt_input(self) -> Union[str, list[dict[str, str]]]:
        if isinstance(self.prompt, str):
            return self.prompt
        return [message.model_dump() for message in self.prompt]


class InterruptRequest(BaseModel):
    reason: Optional[str] = None
