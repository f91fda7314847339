from __future__ import annotations

import pytest

from agentmem.store import MemoryStore, Observation, SessionSummary


def _observe(store: MemoryStore, session_id: str, **kwargs) -> Observation:
    data = {
        "type": "explore",
        "title": "Read config.py",
        "narrative": "Config is loaded from JSON then env",
        "session_id": session_id,
        "project_id": "proj",
    }
    data.update(kwargs)
    return store.add_observation(Observation(**data))


def test_session_lifecycle(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj", chat_id="chat-1")

    assert [s.id for s in store.active_sessions("sub-1")] == [session.id]
    assert store.complete_session(session.id) is True
    assert store.complete_session(session.id) is False
    assert store.fail_session(session.id) is False

    loaded = store.get_session(session.id)
    assert loaded is not None
    assert loaded.status == "completed"
    assert loaded.chat_id == "chat-1"
    assert loaded.completed_at is not None
    assert store.active_sessions("sub-1") == []


def test_session_summary_roundtrip(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    assert store.get_session(session.id).summary is None

    store.update_session_summary(
        session.id, SessionSummary(request="Add search", next_steps="Tune ranking"), model="m"
    )

    summary = store.get_session(session.id).summary
    assert summary == SessionSummary(request="Add search", next_steps="Tune ranking")


def test_recent_sessions_are_newest_first(store: MemoryStore) -> None:
    old = store.start_session("sub-1", "proj", started_at=1000)
    new = store.start_session("sub-2", "proj", started_at=2000)
    store.start_session("sub-3", "other", started_at=3000)

    assert [s.id for s in store.recent_sessions("proj")] == [new.id, old.id]
    assert len(store.recent_sessions("proj", limit=1)) == 1


def test_prompt_numbers_default_to_next(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    store.add_user_prompt(session.id, "proj", "first")
    store.add_user_prompt(session.id, "proj", "explicit", prompt_number=7)
    store.add_user_prompt(session.id, "proj", "third")

    prompts = store.prompts_for_session(session.id)
    assert [(p.prompt_text, p.prompt_number) for p in prompts] == [
        ("first", 1),
        ("third", 3),
        ("explicit", 7),
    ]


def test_observation_roundtrip_keeps_lists(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    obs = _observe(
        store,
        session.id,
        facts=["a", "b"],
        concepts=["how-it-works"],
        files_read=["config.py"],
        tool_name="Read",
        tool_call_id="call-1",
        prompt_number=2,
    )

    loaded = store.get_observation(obs.id)
    assert loaded == obs
    assert store.has_tool_call(session.id, "call-1")
    assert not store.has_tool_call(session.id, "call-2")
    assert store.get_observations([obs.id, "missing"]) == {obs.id: obs}


def test_add_observation_validates(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    with pytest.raises(ValueError, match="Invalid observation type"):
        _observe(store, session.id, type="vibes")
    with pytest.raises(ValueError, match="requires session_id"):
        store.add_observation(Observation(type="explore", title="x"))


def test_recent_observations_filters(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    first = _observe(store, session.id, created_at=1)
    chat = _observe(store, session.id, type="conversation", created_at=2)
    _observe(store, session.id, project_id="other", created_at=3)

    assert [o.id for o in store.recent_observations("proj")] == [chat.id, first.id]
    assert [o.id for o in store.recent_observations("proj", types=["explore"])] == [first.id]
    excluded = store.recent_observations("proj", exclude_types=["conversation"])
    assert [o.id for o in excluded] == [first.id]


def test_iter_observations_pages_in_order(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    ids = [_observe(store, session.id, created_at=i).id for i in range(5)]
    _observe(store, session.id, project_id="other", created_at=10)

    paged = [o.id for o in store.iter_observations("proj", batch_size=2)]

    assert paged == ids
    assert len(list(store.iter_observations())) == 6


def test_delete_and_clear_project(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    store.add_user_prompt(session.id, "proj", "hello")
    kept = _observe(store, session.id)
    doomed = _observe(store, session.id)

    assert store.delete_observation(doomed.id) is True
    assert store.delete_observation(doomed.id) is False
    assert store.search_observations("config") != []

    assert store.clear_project("proj") == 1
    assert store.get_observation(kept.id) is None
    assert store.get_session(session.id) is None
    assert store.search_observations("config") == []


def test_lexical_search_uses_fts_and_substring(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    obs = _observe(store, session.id, title="Tokenizer", narrative="splits 日本語 text")
    _observe(store, session.id, title="Other", narrative="unrelated", project_id="other")

    fts = store.search_observations("tokeniz", project_id="proj")
    assert [h.id for h in fts] == [obs.id]
    assert fts[0].kind == "observation"

    substring = store.search_observations("日本", project_id="proj")
    assert [h.id for h in substring] == [obs.id]
    assert store.search_observations("   ") == []


def test_usage_and_stats(store: MemoryStore) -> None:
    session = store.start_session("sub-1", "proj")
    _observe(store, session.id)
    store.record_usage("session_summary", session.id, "m", tokens_read=10, tokens_written=4)
    store.record_usage("session_summary", session.id, "m", tokens_read=5)

    assert store.usage_summary() == [
        {"event": "session_summary", "count": 2, "tokens_read": 15, "tokens_written": 4}
    ]
    stats = store.stats("proj")
    assert stats["sessions"] == 1
    assert stats["observations"] == 1
    assert stats["observation_types"] == {"explore": 1}
    assert stats["active_sessions"] == 1
