"""Typed hook payloads exchanged with the chat lifecycle.

Events are correlated by ``sub_chat_id``; the hooks map it to the active
memory session. ``parse_hook_event`` validates raw JSON-like payloads (snake or
camel case keys) and raises ``ValueError`` on anything malformed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Any


@dataclass(frozen=True)
class SessionStartEvent:
    sub_chat_id: str
    project_id: str
    prompt: str = ""
    chat_id: str | None = None
    prompt_number: int | None = None
    summary_provider_id: str | None = None
    summary_model_id: str | None = None
    recording_enabled: bool = True


@dataclass(frozen=True)
class UserPromptEvent:
    sub_chat_id: str
    project_id: str
    prompt: str
    prompt_number: int | None = None


@dataclass(frozen=True)
class ToolOutputEvent:
    sub_chat_id: str
    project_id: str
    tool_name: str
    tool_input: Any = None
    tool_output: Any = None
    tool_call_id: str | None = None
    prompt_number: int | None = None


@dataclass(frozen=True)
class AssistantMessageEvent:
    sub_chat_id: str
    project_id: str
    text: str
    message_id: str | None = None
    prompt_number: int | None = None


@dataclass(frozen=True)
class SessionEndEvent:
    sub_chat_id: str


@dataclass(frozen=True)
class SessionFailedEvent:
    sub_chat_id: str


@dataclass(frozen=True)
class EnhancePromptRequest:
    project_id: str
    prompt: str = ""
    memory_enabled: bool = True


@dataclass(frozen=True)
class EnhancePromptResult:
    context: str | None = None


HookEvent = (
    SessionStartEvent
    | UserPromptEvent
    | ToolOutputEvent
    | AssistantMessageEvent
    | SessionEndEvent
    | SessionFailedEvent
    | EnhancePromptRequest
)

EVENT_TYPES: dict[str, type] = {
    "session_start": SessionStartEvent,
    "user_prompt": UserPromptEvent,
    "tool_output": ToolOutputEvent,
    "assistant_message": AssistantMessageEvent,
    "session_end": SessionEndEvent,
    "session_failed": SessionFailedEvent,
    "enhance_prompt": EnhancePromptRequest,
}

# Fields passed through without type checks.
_OPAQUE_FIELDS = {"tool_input", "tool_output"}
_REQUIRED_TEXT = {"sub_chat_id", "project_id", "tool_name"}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _coerce(name: str, value: Any, default: Any) -> Any:
    if name in _OPAQUE_FIELDS or value is None:
        return value
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        raise ValueError(f"{name} must be a boolean")
    if name == "prompt_number":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer")
        return value
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def parse_hook_event(payload: dict[str, Any]) -> HookEvent:
    if not isinstance(payload, dict):
        raise ValueError("hook payload must be an object")
    raw_kind = payload.get("event") or payload.get("type")
    if not isinstance(raw_kind, str):
        raise ValueError("hook payload requires an 'event' name")
    kind = _snake(raw_kind.rsplit(":", 1)[-1].replace("-", "_"))
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown hook event '{raw_kind}'")
    data = {_snake(key): value for key, value in payload.items() if key not in {"event", "type"}}
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        kwargs[f.name] = _coerce(f.name, data[f.name], f.default)
    for name in _REQUIRED_TEXT:
        if name in {f.name for f in fields(cls)}:
            value = kwargs.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{kind} requires a non-empty {name}")
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"invalid {kind} payload: {exc}") from exc
