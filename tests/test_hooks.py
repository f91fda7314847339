from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from agentmem.events import (
    AssistantMessageEvent,
    EnhancePromptRequest,
    EnhancePromptResult,
    SessionEndEvent,
    SessionFailedEvent,
    SessionStartEvent,
    ToolOutputEvent,
    UserPromptEvent,
)
from agentmem.hooks import MemoryHooks
from agentmem.llm import LLMResponse, LLMUsage
from agentmem.store import MemoryStore, Observation
from agentmem.summarizer import Summarizer, SummaryModelConfig

SUMMARY_XML = (
    "<summary><request>Fix the parser</request><learned>Tokens are lazy</learned></summary>"
)
PARSER_SOURCE = "def parse(text):\n    tokens = tokenize(text)\n    return build_tree(tokens)\n"
ENHANCED_XML = (
    "<observation><type>analyze</type><title>Parser entry point</title>"
    "<narrative>parse() drives the tokenizer.</narrative></observation>"
)


def _summarizer(bridge: AsyncMock) -> Summarizer:
    return Summarizer(bridge, SummaryModelConfig("anthropic", "claude-haiku-4-5"))


def _read_event(
    path: str = "/src/parser.py", call_id: str | None = "call-1"
) -> ToolOutputEvent:
    return ToolOutputEvent(
        sub_chat_id="sub-1",
        project_id="proj",
        tool_name="Read",
        tool_input={"file_path": path},
        tool_output=PARSER_SOURCE,
        tool_call_id=call_id,
        prompt_number=1,
    )


async def _start(hooks: MemoryHooks, prompt: str = "fix the parser") -> str:
    session_id = await hooks.dispatch(
        SessionStartEvent(sub_chat_id="sub-1", project_id="proj", prompt=prompt)
    )
    assert session_id is not None
    return session_id


@pytest.mark.asyncio
async def test_session_start_records_first_prompt(store: MemoryStore) -> None:
    hooks = MemoryHooks(store, Mock())

    session_id = await _start(hooks)

    assert hooks.session_id_for("sub-1") == session_id
    prompts = store.prompts_for_session(session_id)
    assert [(p.prompt_text, p.prompt_number) for p in prompts] == [("fix the parser", 1)]


@pytest.mark.asyncio
async def test_second_start_leaves_one_active_session(store: MemoryStore) -> None:
    hooks = MemoryHooks(store, Mock())

    first = await _start(hooks)
    second = await _start(hooks, prompt="")

    assert first != second
    assert [s.id for s in store.active_sessions("sub-1")] == [second]
    assert store.get_session(first).status == "completed"


@pytest.mark.asyncio
async def test_stale_database_sessions_are_closed(store: MemoryStore) -> None:
    leftover = store.start_session("sub-1", "proj")
    hooks = MemoryHooks(store, Mock())

    session_id = await _start(hooks)

    assert store.get_session(leftover.id).status == "completed"
    assert [s.id for s in store.active_sessions("sub-1")] == [session_id]


@pytest.mark.asyncio
async def test_recording_disabled_creates_nothing(store: MemoryStore) -> None:
    hooks = MemoryHooks(store, Mock())
    result = await hooks.on_session_start(
        SessionStartEvent(sub_chat_id="sub-1", project_id="proj", recording_enabled=False)
    )
    assert result is None
    assert store.active_sessions("sub-1") == []


@pytest.mark.asyncio
async def test_tool_output_is_stored_and_queued(store: MemoryStore) -> None:
    queue = Mock()
    hooks = MemoryHooks(store, queue)
    await _start(hooks)

    obs_id = await hooks.dispatch(_read_event())

    assert obs_id is not None
    obs = store.get_observation(obs_id)
    assert obs is not None
    assert obs.type == "explore"
    assert obs.files_read == ["/src/parser.py"]
    assert obs.prompt_number == 1
    queue.enqueue.assert_called_once()
    args = queue.enqueue.call_args.args
    assert args[0] == obs_id
    assert args[2:] == ("proj", "explore", obs.created_at)
    assert "Read parser.py" in args[1]


@pytest.mark.asyncio
async def test_tool_output_skips(store: MemoryStore) -> None:
    queue = Mock()
    hooks = MemoryHooks(store, queue)

    assert await hooks.dispatch(_read_event()) is None  # no session yet
    await _start(hooks)
    assert await hooks.dispatch(_read_event("/home/u/.agentmem/memory.sqlite")) is None
    assert await hooks.dispatch(_read_event(call_id="dup")) is not None
    assert await hooks.dispatch(_read_event(call_id="dup")) is None
    assert queue.enqueue.call_count == 1


@pytest.mark.asyncio
async def test_observation_without_narrative_is_not_queued(store: MemoryStore) -> None:
    queue = Mock()
    hooks = MemoryHooks(store, queue)
    session_id = await _start(hooks)

    obs_id = hooks._store_observation(
        Observation(type="explore", title="Listed files"), session_id, "proj", None
    )

    assert store.get_observation(obs_id) is not None
    queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_assistant_message_becomes_observation(store: MemoryStore) -> None:
    hooks = MemoryHooks(store, Mock())
    await _start(hooks)

    obs_id = await hooks.dispatch(
        AssistantMessageEvent(
            sub_chat_id="sub-1",
            project_id="proj",
            text="We decided to keep the tokenizer lazy instead of eager.",
            message_id="msg-1",
        )
    )

    obs = store.get_observation(obs_id)
    assert obs is not None
    assert obs.type == "decision"
    assert obs.tool_call_id == "msg-1"


@pytest.mark.asyncio
async def test_user_prompt_numbers_increase(store: MemoryStore) -> None:
    hooks = MemoryHooks(store, Mock())
    session_id = await _start(hooks)

    await hooks.dispatch(UserPromptEvent(sub_chat_id="sub-1", project_id="proj", prompt="next"))
    await hooks.dispatch(UserPromptEvent(sub_chat_id="other", project_id="proj", prompt="lost"))

    numbers = [p.prompt_number for p in store.prompts_for_session(session_id)]
    assert numbers == [1, 2]


@pytest.mark.asyncio
async def test_session_end_generates_summary(store: MemoryStore) -> None:
    bridge = AsyncMock()
    bridge.call.return_value = LLMResponse(SUMMARY_XML, LLMUsage(300, 60, "claude-haiku-4-5"))
    hooks = MemoryHooks(store, Mock(), _summarizer(bridge))
    session_id = await _start(hooks)

    await hooks.dispatch(SessionEndEvent(sub_chat_id="sub-1"))
    await hooks.supervisor.join()

    session = store.get_session(session_id)
    assert session.status == "completed"
    assert session.summary is not None
    assert session.summary.request == "Fix the parser"
    assert hooks.session_id_for("sub-1") is None
    usage = {row["event"]: row for row in store.usage_summary()}
    assert usage["session_summary"]["tokens_read"] == 300


@pytest.mark.asyncio
async def test_session_failed_skips_summary(store: MemoryStore) -> None:
    bridge = AsyncMock()
    hooks = MemoryHooks(store, Mock(), _summarizer(bridge))
    session_id = await _start(hooks)

    await hooks.dispatch(SessionFailedEvent(sub_chat_id="sub-1"))
    await hooks.supervisor.join()

    assert store.get_session(session_id).status == "failed"
    bridge.call.assert_not_awaited()


@pytest.mark.asyncio
async def test_enhancement_replaces_rule_based_fields(store: MemoryStore) -> None:
    bridge = AsyncMock()
    bridge.call.return_value = LLMResponse(ENHANCED_XML, LLMUsage(100, 20, "claude-haiku-4-5"))
    hooks = MemoryHooks(store, Mock(), _summarizer(bridge))
    await _start(hooks)

    obs_id = await hooks.dispatch(_read_event())

    obs = store.get_observation(obs_id)
    assert obs.type == "analyze"
    assert obs.title == "Parser entry point"
    assert obs.files_read == ["/src/parser.py"]
    usage = {row["event"]: row for row in store.usage_summary()}
    assert usage["observation_enhance"]["tokens_written"] == 20


@pytest.mark.asyncio
async def test_session_start_configures_summarizer(store: MemoryStore) -> None:
    summarizer = Summarizer(AsyncMock())
    hooks = MemoryHooks(store, Mock(), summarizer)

    await hooks.dispatch(
        SessionStartEvent(
            sub_chat_id="sub-1",
            project_id="proj",
            summary_provider_id="openai",
            summary_model_id="gpt-4.1-mini",
        )
    )

    assert summarizer.config == SummaryModelConfig("openai", "gpt-4.1-mini")


@pytest.mark.asyncio
async def test_enhance_prompt_returns_context(store: MemoryStore) -> None:
    build = AsyncMock(return_value="# Memory Context\n...")
    hooks = MemoryHooks(store, Mock(), build_context=build)

    result = await hooks.dispatch(EnhancePromptRequest(project_id="proj", prompt="hello there"))

    assert result == EnhancePromptResult(context="# Memory Context\n...")
    build.assert_awaited_once_with("hello there", "proj")
    disabled = await hooks.enhance_prompt(
        EnhancePromptRequest(project_id="proj", memory_enabled=False)
    )
    assert disabled.context is None


@pytest.mark.asyncio
async def test_enhance_prompt_timeout_and_errors_yield_nothing(store: MemoryStore) -> None:
    async def slow(prompt, project_id):
        await asyncio.sleep(5)
        return "late"

    hooks = MemoryHooks(store, Mock(), build_context=slow, enhance_timeout_s=0.01)
    assert (await hooks.enhance_prompt(EnhancePromptRequest(project_id="proj"))).context is None

    hooks.build_context = AsyncMock(side_effect=RuntimeError("db locked"))
    assert (await hooks.enhance_prompt(EnhancePromptRequest(project_id="proj"))).context is None
