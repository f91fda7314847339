from __future__ import annotations

import json
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from .llm import LLMBridge, LLMUsage
from .memory_kinds import OBSERVATION_CONCEPTS, OBSERVATION_TYPES
from .redaction import redact
from .store.types import Observation, SessionSummary
from .xml_parser import parse_observation_xml, parse_summary_xml

logger = logging.getLogger(__name__)

DEFAULT_SKIP_TOOLS = ("Glob", "WebSearch")
MIN_OUTPUT_CHARS = 50
MAX_INPUT_CHARS = 1500
MAX_OUTPUT_CHARS = 2000
ENHANCE_MAX_TOKENS = 300
SUMMARY_MAX_TOKENS = 500
SUMMARY_PROMPT_CHARS = 200
SUMMARY_NARRATIVE_CHARS = 150
TITLE_CHARS = 80

OBSERVATION_SYSTEM_PROMPT = f"""
You are a memory observer for a live coding session. Given one tool call, record
what was learned or changed so it can be recalled in later sessions.

Respond with XML only:
<observation>
  <type>[ {", ".join(OBSERVATION_TYPES)} ]</type>
  <title>[short outcome-focused title, under 80 characters]</title>
  <narrative>[what happened, how it works, why it matters; 1-3 sentences]</narrative>
  <concepts>[comma-separated from: {", ".join(OBSERVATION_CONCEPTS)}]</concepts>
</observation>
""".strip()

SUMMARY_SYSTEM_PROMPT = """
You summarize a finished coding session for a developer's long-term memory.
Be concrete. Leave a field empty rather than guessing.

Respond with XML only:
<summary>
  <request>[what the user asked for]</request>
  <investigated>[what was examined]</investigated>
  <learned>[what was learned]</learned>
  <completed>[what was done]</completed>
  <next_steps>[what remains]</next_steps>
</summary>
""".strip()


class SlidingWindowRateLimiter:
    """Allows at most ``max_calls`` acquisitions in any ``window_s`` span.

    Never blocks: ``try_acquire`` answers immediately.
    """

    def __init__(
        self,
        max_calls: int = 10,
        window_s: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = max(0, int(max_calls))
        self.window_s = float(window_s)
        self._clock = clock
        self._calls: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_s:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        now = self._clock()
        self._evict(now)
        if len(self._calls) >= self.max_calls:
            return False
        self._calls.append(now)
        return True

    def remaining(self) -> int:
        self._evict(self._clock())
        return max(0, self.max_calls - len(self._calls))


@dataclass(frozen=True)
class SummaryModelConfig:
    provider_id: str
    model_id: str


@dataclass
class EnhanceResult:
    observation: Observation
    usage: LLMUsage | None = None

    @property
    def enhanced(self) -> bool:
        return self.usage is not None


@dataclass
class SummaryResult:
    summary: SessionSummary
    usage: LLMUsage | None = None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def merge_enhancement(obs: Observation, xml_text: str | None) -> Observation:
    """Overlay model-provided fields onto a rule-based observation.

    Files and facts always come from the rule-based pass. Fields the model left
    out keep their rule-based values.
    """

    parsed = parse_observation_xml(xml_text)
    if parsed is None:
        return obs
    title = parsed.title or obs.title
    if len(title) > TITLE_CHARS:
        title = title[: TITLE_CHARS - 3].rstrip() + "..."
    return replace(
        obs,
        type=parsed.type or obs.type,
        title=title,
        narrative=parsed.narrative or obs.narrative,
        concepts=parsed.concepts or list(obs.concepts),
        facts=list(obs.facts),
        files_read=list(obs.files_read),
        files_modified=list(obs.files_modified),
    )


class Summarizer:
    """LLM enhancement of observations and session summaries.

    Unconfigured, rate-limited or failing calls leave the rule-based data as it
    is; nothing here raises to the caller.
    """

    def __init__(
        self,
        bridge: LLMBridge | None,
        config: SummaryModelConfig | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        skip_tools: Iterable[str] = DEFAULT_SKIP_TOOLS,
        min_output_chars: int = MIN_OUTPUT_CHARS,
        enhance_enabled: bool = True,
    ) -> None:
        self.bridge = bridge
        self.config = config
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.skip_tools = {name.lower() for name in skip_tools}
        self.min_output_chars = min_output_chars
        self.enhance_enabled = enhance_enabled

    def configure(self, config: SummaryModelConfig | None) -> None:
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.bridge is not None and self.config is not None

    def should_enhance(self, obs: Observation, tool_output: Any) -> bool:
        """Cheap gates checked before spending rate-limiter budget."""

        if not self.enhance_enabled or not self.is_configured:
            return False
        tool_name = (obs.tool_name or "").lower()
        if tool_name in self.skip_tools:
            return False
        return len(_as_text(tool_output)) >= self.min_output_chars

    async def enhance_observation(
        self, obs: Observation, tool_input: Any, tool_output: Any
    ) -> EnhanceResult:
        if not self.should_enhance(obs, tool_output):
            return EnhanceResult(obs)
        if not self.rate_limiter.try_acquire():
            logger.debug("enhancement rate limit reached", extra={"tool": obs.tool_name})
            return EnhanceResult(obs)
        config = self.config
        bridge = self.bridge
        if config is None or bridge is None:
            return EnhanceResult(obs)
        user_message = "\n".join(
            [
                f"Tool: {obs.tool_name or 'unknown'}",
                f"Rule-based title: {obs.title}",
                "",
                "Input:",
                redact(_truncate(_as_text(tool_input), MAX_INPUT_CHARS)),
                "",
                "Output:",
                redact(_truncate(_as_text(tool_output), MAX_OUTPUT_CHARS)),
            ]
        )
        try:
            response = await bridge.call(
                config.provider_id,
                config.model_id,
                OBSERVATION_SYSTEM_PROMPT,
                user_message,
                ENHANCE_MAX_TOKENS,
            )
        except Exception as exc:
            logger.warning("observation enhancement failed", exc_info=exc)
            return EnhanceResult(obs)
        if response is None or not response.text.strip():
            return EnhanceResult(obs)
        merged = merge_enhancement(obs, response.text)
        return EnhanceResult(merged, response.usage)

    async def generate_session_summary(
        self, prompts: Sequence[str], observations: Sequence[Observation]
    ) -> SummaryResult | None:
        config = self.config
        bridge = self.bridge
        if config is None or bridge is None:
            return None
        if not prompts and not observations:
            return None
        lines = ["User prompts:"]
        for index, prompt in enumerate(prompts, start=1):
            lines.append(f"{index}. {redact(prompt[:SUMMARY_PROMPT_CHARS])}")
        lines.append("")
        lines.append("Observations:")
        for obs in observations:
            narrative = redact((obs.narrative or "")[:SUMMARY_NARRATIVE_CHARS])
            lines.append(f"- [{obs.type}] {obs.title}: {narrative}")
        try:
            response = await bridge.call(
                config.provider_id,
                config.model_id,
                SUMMARY_SYSTEM_PROMPT,
                "\n".join(lines),
                SUMMARY_MAX_TOKENS,
            )
        except Exception as exc:
            logger.warning("session summary failed", exc_info=exc)
            return None
        if response is None:
            return None
        summary = parse_summary_xml(response.text)
        if summary is None:
            return None
        return SummaryResult(summary, response.usage)
