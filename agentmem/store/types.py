from __future__ import annotations

import time
from dataclasses import dataclass, field
from uuid import uuid4


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid4().hex


@dataclass
class Observation:
    type: str
    title: str
    narrative: str = ""
    subtitle: str | None = None
    facts: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)
    files_read: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    tool_name: str | None = None
    tool_call_id: str | None = None
    session_id: str = ""
    project_id: str = ""
    prompt_number: int | None = None
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class SessionSummary:
    request: str = ""
    investigated: str = ""
    learned: str = ""
    completed: str = ""
    next_steps: str = ""

    def is_empty(self) -> bool:
        return not any(
            (self.request, self.investigated, self.learned, self.completed, self.next_steps)
        )


@dataclass
class Session:
    id: str
    sub_chat_id: str
    project_id: str
    chat_id: str | None
    status: str
    started_at: int
    completed_at: int | None = None
    summary: SessionSummary | None = None


@dataclass
class UserPrompt:
    id: str
    session_id: str
    project_id: str
    prompt_text: str
    prompt_number: int
    created_at: int


@dataclass
class LexicalHit:
    """One row of a full-text query, ranked best first by the caller."""

    kind: str
    id: str
    title: str
    subtitle: str | None
    excerpt: str
    session_id: str
    project_id: str
    created_at: int
    score: float
    observation_type: str | None = None
    tool_call_id: str | None = None
