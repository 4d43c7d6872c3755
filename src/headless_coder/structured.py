from __future__ import annotations

import json
import re
from typing import Any, Union

PromptMessage = dict[str, str]
PromptInput = Union[str, list[PromptMessage]]

STRUCTURED_OUTPUT_SUFFIX = (
    "You must respond with valid JSON that satisfies the provided schema. "
    "Do not include prose before or after the JSON."
)

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]+?)```", re.IGNORECASE)


def to_prompt(prompt: PromptInput, *, upper_roles: bool = False) -> str:
    if isinstance(prompt, str):
        return prompt
    lines: list[str] = []
    for message in prompt:
        role = str(message.get("role", "user"))
        lines.append(f"{role.upper() if upper_roles else role}: {message.get('content', '')}")
    return "\n".join(lines)


def schema_instruction(schema: Any) -> str:
    return f"{STRUCTURED_OUTPUT_SUFFIX}\nSchema:\n{json.dumps(schema, indent=2)}"


def apply_output_schema(prompt: PromptInput, schema: Any | None) -> PromptInput:
    """Adds the schema instruction to ``prompt`` when a schema is requested.

    String prompts get the instruction appended after a blank line; message
    lists get it as a leading system message.
    """
    if not schema:
        return prompt
    instruction = schema_instruction(schema)
    if isinstance(prompt, str):
        return f"{prompt}\n\n{instruction}"
    return [{"role": "system", "content": instruction}, *prompt]


def extract_json_payload(text: str | None) -> Any | None:
    if not text:
        return None
    fenced = _FENCED_JSON_RE.search(text)
    candidate = (fenced.group(1) if fenced else text).strip()
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    try:
        return json.loads(candidate[start : end + 1])
    except json.JSONDecodeError:
        return None
