from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .embedding_queue import EmbeddingQueue
from .events import (
    AssistantMessageEvent,
    EnhancePromptRequest,
    EnhancePromptResult,
    HookEvent,
    SessionEndEvent,
    SessionFailedEvent,
    SessionStartEvent,
    ToolOutputEvent,
    UserPromptEvent,
)
from .llm import LLMUsage
from .observation_parser import (
    build_observation_text,
    is_meta_observation,
    parse_assistant_text,
    parse_tool_output,
)
from .store import MemoryStore, Observation
from .summarizer import Summarizer, SummaryModelConfig
from .tasks import TaskSupervisor

logger = logging.getLogger(__name__)

ENHANCE_PROMPT_TIMEOUT_S = 15.0

ContextBuilder = Callable[[str | None, str], Awaitable[str | None]]


class MemoryHooks:
    """Entry points called by the chat lifecycle.

    Events are keyed by ``sub_chat_id``; at most one memory session is active
    per key. Recording never raises to the caller and never waits on indexing.
    """

    def __init__(
        self,
        store: MemoryStore,
        queue: EmbeddingQueue | None,
        summarizer: Summarizer | None = None,
        *,
        build_context: ContextBuilder | None = None,
        supervisor: TaskSupervisor | None = None,
        enhance_timeout_s: float = ENHANCE_PROMPT_TIMEOUT_S,
    ) -> None:
        self.store = store
        self.queue = queue
        self.summarizer = summarizer
        self.build_context = build_context
        self.supervisor = supervisor or TaskSupervisor()
        self.enhance_timeout_s = enhance_timeout_s
        self._sessions: dict[str, str] = {}

    def session_id_for(self, sub_chat_id: str) -> str | None:
        return self._sessions.get(sub_chat_id)

    async def dispatch(self, event: HookEvent) -> Any:
        if isinstance(event, SessionStartEvent):
            return await self.on_session_start(event)
        if isinstance(event, UserPromptEvent):
            return await self.on_user_prompt(event)
        if isinstance(event, ToolOutputEvent):
            return await self.on_tool_output(event)
        if isinstance(event, AssistantMessageEvent):
            return await self.on_assistant_message(event)
        if isinstance(event, SessionEndEvent):
            return await self.on_session_end(event)
        if isinstance(event, SessionFailedEvent):
            return await self.on_session_failed(event)
        if isinstance(event, EnhancePromptRequest):
            return await self.enhance_prompt(event)
        raise ValueError(f"unsupported hook event {type(event).__name__}")

    # Session lifecycle

    def _end_stale_sessions(self, sub_chat_id: str) -> None:
        stale: list[str] = []
        mapped = self._sessions.pop(sub_chat_id, None)
        if mapped:
            stale.append(mapped)
        try:
            active = self.store.active_sessions(sub_chat_id)
            stale.extend(s.id for s in active if s.id not in stale)
        except Exception as exc:
            logger.warning("stale session lookup failed", exc_info=exc)
        for session_id in stale:
            try:
                if self.store.complete_session(session_id):
                    logger.info("stale session completed", extra={"session_id": session_id})
                    self._spawn_summary(session_id)
            except Exception as exc:
                logger.warning(
                    "stale session cleanup failed", extra={"session_id": session_id}, exc_info=exc
                )

    async def on_session_start(self, event: SessionStartEvent) -> str | None:
        if not event.recording_enabled:
            return None
        if self.summarizer is not None:
            if event.summary_provider_id and event.summary_model_id:
                self.summarizer.configure(
                    SummaryModelConfig(event.summary_provider_id, event.summary_model_id)
                )
        self._end_stale_sessions(event.sub_chat_id)
        try:
            session = self.store.start_session(
                event.sub_chat_id, event.project_id, chat_id=event.chat_id
            )
        except Exception as exc:
            logger.error("failed to create memory session", exc_info=exc)
            return None
        self._sessions[event.sub_chat_id] = session.id
        logger.info("memory session started", extra={"session_id": session.id})
        if event.prompt:
            self._record_prompt(session.id, event.project_id, event.prompt, event.prompt_number)
        return session.id

    async def on_session_end(self, event: SessionEndEvent) -> None:
        session_id = self._sessions.pop(event.sub_chat_id, None)
        if not session_id:
            return
        try:
            self.store.complete_session(session_id)
        except Exception as exc:
            logger.error(
                "failed to complete memory session", extra={"session_id": session_id}, exc_info=exc
            )
            return
        logger.info("memory session completed", extra={"session_id": session_id})
        self._spawn_summary(session_id)

    async def on_session_failed(self, event: SessionFailedEvent) -> None:
        session_id = self._sessions.pop(event.sub_chat_id, None)
        if not session_id:
            return
        try:
            self.store.fail_session(session_id)
            logger.info("memory session failed", extra={"session_id": session_id})
        except Exception as exc:
            logger.error(
                "failed to mark memory session failed",
                extra={"session_id": session_id},
                exc_info=exc,
            )

    # Records

    def _record_prompt(
        self, session_id: str, project_id: str, prompt: str, prompt_number: int | None
    ) -> None:
        try:
            self.store.add_user_prompt(session_id, project_id, prompt, prompt_number)
        except Exception as exc:
            logger.error("failed to record user prompt", exc_info=exc)

    async def on_user_prompt(self, event: UserPromptEvent) -> None:
        session_id = self._sessions.get(event.sub_chat_id)
        if not session_id or not event.prompt:
            return
        self._record_prompt(session_id, event.project_id, event.prompt, event.prompt_number)

    async def on_tool_output(self, event: ToolOutputEvent) -> str | None:
        session_id = self._sessions.get(event.sub_chat_id)
        if not session_id:
            return None
        if is_meta_observation(event.tool_name, event.tool_input):
            return None
        if event.tool_call_id and self.store.has_tool_call(session_id, event.tool_call_id):
            return None
        obs = parse_tool_output(
            event.tool_name, event.tool_input, event.tool_output, event.tool_call_id
        )
        if obs is None:
            return None
        if self.summarizer is not None and self.summarizer.is_configured:
            try:
                result = await self.summarizer.enhance_observation(
                    obs, event.tool_input, event.tool_output
                )
            except Exception as exc:
                logger.warning("enhancement failed, keeping rule-based observation", exc_info=exc)
            else:
                obs = result.observation
                if result.usage is not None:
                    self._record_usage("observation_enhance", session_id, result.usage)
        return self._store_observation(obs, session_id, event.project_id, event.prompt_number)

    async def on_assistant_message(self, event: AssistantMessageEvent) -> str | None:
        session_id = self._sessions.get(event.sub_chat_id)
        if not session_id or not event.text:
            return None
        obs = parse_assistant_text(event.text, event.message_id)
        if obs is None:
            return None
        return self._store_observation(obs, session_id, event.project_id, event.prompt_number)

    def _store_observation(
        self, obs: Observation, session_id: str, project_id: str, prompt_number: int | None
    ) -> str | None:
        obs.session_id = session_id
        obs.project_id = project_id
        obs.prompt_number = prompt_number
        try:
            self.store.add_observation(obs)
        except Exception as exc:
            logger.error("failed to store observation", exc_info=exc)
            return None
        logger.info(
            "observation recorded",
            extra={"observation_id": obs.id, "type": obs.type, "title": obs.title[:50]},
        )
        # Observations without a narrative stay in the store but are never indexed.
        if self.queue is not None and obs.narrative.strip():
            self.queue.enqueue(
                obs.id, build_observation_text(obs), project_id, obs.type, obs.created_at
            )
        return obs.id

    def _record_usage(self, event: str, session_id: str, usage: LLMUsage) -> None:
        try:
            self.store.record_usage(
                event,
                session_id=session_id,
                model=usage.model,
                tokens_read=usage.input_tokens,
                tokens_written=usage.output_tokens,
            )
        except Exception as exc:
            logger.warning("failed to record usage", exc_info=exc)

    # Summaries

    def _spawn_summary(self, session_id: str) -> None:
        if self.summarizer is None or not self.summarizer.is_configured:
            return
        try:
            self.supervisor.spawn(self._summarize(session_id), name=f"summary-{session_id}")
        except RuntimeError as exc:
            logger.warning("no event loop for session summary", exc_info=exc)

    async def _summarize(self, session_id: str) -> None:
        if self.summarizer is None:
            return
        prompts = [p.prompt_text for p in self.store.prompts_for_session(session_id)]
        observations = self.store.observations_for_session(session_id)
        result = await self.summarizer.generate_session_summary(prompts, observations)
        if result is None:
            return
        if result.usage is not None:
            self._record_usage("session_summary", session_id, result.usage)
        model = self.summarizer.config.model_id if self.summarizer.config else None
        self.store.update_session_summary(session_id, result.summary, model=model)
        logger.info("session summary stored", extra={"session_id": session_id})

    # Context

    async def enhance_prompt(self, request: EnhancePromptRequest) -> EnhancePromptResult:
        if not request.memory_enabled or not request.project_id or self.build_context is None:
            return EnhancePromptResult()
        try:
            context = await asyncio.wait_for(
                self.build_context(request.prompt, request.project_id),
                timeout=self.enhance_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("memory context build timed out")
            return EnhancePromptResult()
        except Exception as exc:
            logger.warning("memory context build failed", exc_info=exc)
            return EnhancePromptResult()
        return EnhancePromptResult(context=context)
