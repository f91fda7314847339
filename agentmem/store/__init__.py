from __future__ import annotations

from ._store import MemoryStore
from .types import LexicalHit, Observation, Session, SessionSummary, UserPrompt

__all__ = [
    "LexicalHit",
    "MemoryStore",
    "Observation",
    "Session",
    "SessionSummary",
    "UserPrompt",
]
