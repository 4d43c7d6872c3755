"""Resume-token bookkeeping shared by the adapters.

A thread's backend state caches two values: the public session id and the
resume token handed to the backend on the next invocation. They differ when a
backend only exposes a positional handle (for instance an index in
``gemini --list-sessions``) until it reports a real id.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from headless_coder.options import StartOptions

if TYPE_CHECKING:
    from headless_coder.adapters.base import ThreadHandle

LOGGER = logging.getLogger(__name__)

_SESSION_LINE_RE = re.compile(r"^\s*(\d+)\.\s.*\[(.+?)\]\s*$")


@dataclass(slots=True)
class SessionState:
    opts: StartOptions
    id: str | None = None
    resume_token: str | None = None
    current_run: Any = None


@dataclass(slots=True, frozen=True)
class SessionEntry:
    index: int
    id: str | None = None


def resolve_resume_target(state: SessionState) -> str | None:
    if state.resume_token:
        return state.resume_token
    if state.id:
        return state.id
    candidate = state.opts.resume
    if isinstance(candidate, str) and candidate:
        return candidate
    return None


def needs_session_lookup(state: SessionState) -> bool:
    return not state.id or not state.resume_token


def extract_session_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    session = payload.get("session") if isinstance(payload.get("session"), dict) else {}
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    for candidate in (
        payload.get("session_id"),
        payload.get("sessionId"),
        session.get("id"),
        session.get("session_id"),
        metadata.get("session_id"),
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def extract_session_index(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    session = payload.get("session") if isinstance(payload.get("session"), dict) else {}
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    for candidate in (
        payload.get("session_index"),
        payload.get("sessionIndex"),
        payload.get("index"),
        session.get("index"),
        session.get("session_index"),
        metadata.get("session_index"),
    ):
        if candidate is None:
            continue
        if isinstance(candidate, bool):
            continue
        if isinstance(candidate, int):
            return str(candidate)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def adopt_session_id(state: SessionState, handle: ThreadHandle | None, session_id: str) -> None:
    if state.id != session_id:
        LOGGER.debug("adopting session id=%s previous=%s", session_id, state.id)
    state.id = session_id
    state.resume_token = session_id
    if handle is not None:
        handle.id = session_id


def capture_session_metadata(state: SessionState, handle: ThreadHandle | None, payload: Any) -> None:
    """Updates cached resume state from one native payload.

    An explicit session id always wins. Without one, an index is only kept as a
    provisional token while no id has ever been observed.
    """
    session_id = extract_session_id(payload)
    if session_id:
        adopt_session_id(state, handle, session_id)
        return
    if state.id:
        return
    resume_index = extract_session_index(payload)
    if resume_index:
        state.resume_token = resume_index


def adopt_latest_session(state: SessionState, handle: ThreadHandle | None, entries: list[SessionEntry]) -> None:
    if not entries:
        return
    latest = entries[-1]
    if latest.id:
        adopt_session_id(state, handle, latest.id)
        return
    if not state.id:
        state.resume_token = str(latest.index)


def parse_session_list(output: str) -> list[SessionEntry]:
    entries: list[SessionEntry] = []
    for line in output.splitlines():
        match = _SESSION_LINE_RE.match(line)
        if not match:
            continue
        session_id = match.group(2).strip()
        entries.append(SessionEntry(index=int(match.group(1)), id=session_id or None))
    return entries
