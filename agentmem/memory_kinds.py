from __future__ import annotations

from typing import Final

OBSERVATION_TYPES: Final[tuple[str, ...]] = (
    "explore",
    "research",
    "implement",
    "fix",
    "refactor",
    "edit",
    "compose",
    "analyze",
    "decision",
    "conversation",
)

OBSERVATION_CONCEPTS: Final[tuple[str, ...]] = (
    "how-it-works",
    "why-it-exists",
    "what-changed",
    "problem-solution",
    "gotcha",
    "pattern",
    "trade-off",
    "api",
    "testing",
    "performance",
    "security",
    "user-requirement",
    "project-context",
    "design-rationale",
    "data-insight",
    "workflow",
    "documentation",
)

# Names older models and prompts still produce.
LEGACY_TYPE_ALIASES: Final[dict[str, str]] = {
    "discovery": "explore",
    "exploration": "explore",
    "investigation": "explore",
    "search": "research",
    "change": "edit",
    "update": "edit",
    "feature": "implement",
    "create": "implement",
    "bugfix": "fix",
    "bug": "fix",
    "cleanup": "refactor",
    "docs": "compose",
    "documentation": "compose",
    "write": "compose",
    "test": "analyze",
    "analysis": "analyze",
    "review": "analyze",
    "plan": "decision",
    "response": "conversation",
    "chat": "conversation",
    "note": "conversation",
}


def normalize_observation_type(value: str | None, default: str = "explore") -> str:
    normalized = (value or "").strip().lower()
    if normalized in OBSERVATION_TYPES:
        return normalized
    return LEGACY_TYPE_ALIASES.get(normalized, default)


def validate_observation_type(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in OBSERVATION_TYPES:
        return normalized
    raise ValueError(
        f"Invalid observation type '{normalized}'. Allowed types: {', '.join(OBSERVATION_TYPES)}"
    )


def normalize_concepts(values: list[str] | tuple[str, ...] | str | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [part for part in values.replace("\n", ",").split(",")]
    concepts: list[str] = []
    for value in values:
        cleaned = str(value).strip().lower().replace(" ", "-").replace("_", "-")
        if cleaned in OBSERVATION_CONCEPTS and cleaned not in concepts:
            concepts.append(cleaned)
    return concepts
