from __future__ import annotations

import html
import re
from dataclasses import dataclass, field

from .memory_kinds import normalize_concepts, normalize_observation_type
from .store.types import SessionSummary

CODE_FENCE_RE = re.compile(r"```(?:xml)?", re.IGNORECASE)


@dataclass
class ParsedObservation:
    type: str | None
    title: str | None
    narrative: str | None
    concepts: list[str] = field(default_factory=list)


def _clean_xml_text(text: str) -> str:
    return CODE_FENCE_RE.sub("", text).strip()


def extract_tag(text: str, tag: str) -> str | None:
    """Contents of the first ``<tag>...</tag>``; case-insensitive, never raises."""

    match = re.search(
        rf"<{re.escape(tag)}(?:\s[^>]*)?>(.*?)</{re.escape(tag)}\s*>",
        text,
        re.IGNORECASE | re.DOTALL,
    )
    if not match:
        return None
    value = html.unescape(match.group(1)).strip()
    return value or None


def _extract_all(text: str, tag: str) -> list[str]:
    pattern = rf"<{re.escape(tag)}(?:\s[^>]*)?>(.*?)</{re.escape(tag)}\s*>"
    return [
        html.unescape(match).strip()
        for match in re.findall(pattern, text, re.IGNORECASE | re.DOTALL)
        if match.strip()
    ]


def parse_observation_xml(text: str | None) -> ParsedObservation | None:
    if not text:
        return None
    cleaned = _clean_xml_text(text)
    raw_type = extract_tag(cleaned, "type")
    title = extract_tag(cleaned, "title")
    narrative = extract_tag(cleaned, "narrative")
    if not raw_type and not title and not narrative:
        return None
    concepts_raw = extract_tag(cleaned, "concepts")
    nested = _extract_all(concepts_raw or "", "concept")
    obs_type = normalize_observation_type(raw_type, default="") if raw_type else ""
    return ParsedObservation(
        type=obs_type or None,
        title=title,
        narrative=narrative,
        concepts=normalize_concepts(nested or concepts_raw),
    )


def parse_summary_xml(text: str | None) -> SessionSummary | None:
    if not text:
        return None
    cleaned = _clean_xml_text(text)
    summary = SessionSummary(
        request=extract_tag(cleaned, "request") or "",
        investigated=extract_tag(cleaned, "investigated") or "",
        learned=extract_tag(cleaned, "learned") or "",
        completed=extract_tag(cleaned, "completed") or "",
        next_steps=extract_tag(cleaned, "next_steps") or "",
    )
    if summary.is_empty():
        return None
    return summary
