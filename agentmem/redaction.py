"""Scrubbers for captured tool text.

``redact`` removes credentials before text is sent to an LLM provider and
``strip_ansi`` removes terminal escapes before tool output is parsed.
``clean_value`` applies either one to every string inside a JSON-like value.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

REDACTED = "[REDACTED]"

SECRET_PATTERNS: dict[str, re.Pattern[str]] = {
    "api_key": re.compile(r"api[_-]?key\s*[:=]\s*['\"]?[A-Za-z0-9_-]{20,}", re.IGNORECASE),
    "openai": re.compile(r"sk-[A-Za-z0-9_-]{10,}", re.IGNORECASE),
    "slack": re.compile(r"xox[baprs]-[A-Za-z0-9-]{10,}", re.IGNORECASE),
    "github": re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"),
    "aws_access_key": re.compile(r"AKIA[0-9A-Z]{16}"),
    "bearer": re.compile(r"bearer\s+[A-Za-z0-9._~+/=-]{20,}", re.IGNORECASE),
}

# CSI sequences, OSC and DCS strings, then two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b(?:"
    r"\[[0-?]*[ -/]*[@-~]"
    r"|\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|P[^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|[@-Z\\-_]"
    r")"
)


def redact(text: str) -> str:
    for pattern in SECRET_PATTERNS.values():
        text = pattern.sub(REDACTED, text)
    return text


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def clean_value(value: Any, scrub: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return scrub(value)
    if isinstance(value, dict):
        return {key: clean_value(item, scrub) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [clean_value(item, scrub) for item in value]
    return value
