from agentmem.observation_parser import (
    build_observation_text,
    detect_command_type,
    is_meta_observation,
    parse_assistant_text,
    parse_tool_output,
)


def test_read_produces_explore_observation_with_file_and_content() -> None:
    obs = parse_tool_output(
        "Read", {"file_path": "/a.ts"}, "export function foo(){}", tool_call_id="call-1"
    )

    assert obs is not None
    assert obs.type == "explore"
    assert obs.files_read == ["/a.ts"]
    assert obs.title == "Read a.ts"
    assert "foo" in obs.narrative
    assert obs.tool_name == "Read"
    assert obs.tool_call_id == "call-1"


def test_read_with_range_mentions_lines() -> None:
    obs = parse_tool_output("Read", {"file_path": "/src/app.py", "offset": 10, "limit": 20}, "")
    assert obs is not None
    assert obs.narrative == "Read lines 10 to 30 from /src/app.py"


def test_tool_input_may_be_json_string() -> None:
    obs = parse_tool_output("Read", '{"file_path": "/b.py"}', "print(1)")
    assert obs is not None
    assert obs.files_read == ["/b.py"]


def test_skip_tools_return_none() -> None:
    assert parse_tool_output("TodoWrite", {"todos": []}, "ok") is None
    assert parse_tool_output("", {}, "anything") is None


def test_write_markdown_is_compose() -> None:
    obs = parse_tool_output("Write", {"file_path": "docs/guide.md", "content": "a\nb\nc"}, "")
    assert obs is not None
    assert obs.type == "compose"
    assert obs.files_modified == ["docs/guide.md"]
    assert obs.narrative == "Created new file docs/guide.md with 3 lines"


def test_write_code_is_implement() -> None:
    obs = parse_tool_output("Write", {"file_path": "src/x.py", "content": "x = 1"}, "")
    assert obs is not None
    assert obs.type == "implement"


def test_edit_summarizes_line_delta() -> None:
    obs = parse_tool_output(
        "Edit",
        {"file_path": "src/x.py", "old_string": "a", "new_string": "a\nb\nc"},
        "ok",
    )
    assert obs is not None
    assert obs.type == "edit"
    assert obs.narrative == "Added 2 line(s) (1 -> 3) in src/x.py"


def test_multiedit_counts_edits() -> None:
    obs = parse_tool_output(
        "MultiEdit", {"file_path": "src/x.py", "edits": [{}, {}, {}]}, "ok"
    )
    assert obs is not None
    assert obs.narrative == "Applied 3 edits to src/x.py"


def test_bash_classifies_commands() -> None:
    assert detect_command_type("git commit -m 'x'") == ("edit", ["what-changed"])
    assert detect_command_type("git status") == ("explore", ["how-it-works"])
    assert detect_command_type("pip install httpx") == ("edit", ["what-changed"])
    assert detect_command_type("uv run pytest -q") == ("analyze", ["testing"])
    assert detect_command_type("ruff check .") == ("analyze", ["pattern"])
    assert detect_command_type("npm run build") == ("analyze", ["workflow"])
    assert detect_command_type("echo hi") == ("explore", ["how-it-works"])


def test_bash_with_short_output_is_skipped_unless_it_changes_things() -> None:
    assert parse_tool_output("Bash", {"command": "ls"}, "a") is None
    obs = parse_tool_output("Bash", {"command": "git commit -m wip"}, "")
    assert obs is not None
    assert obs.type == "edit"
    assert obs.narrative == "Ran git commit -m wip"


def test_bash_strips_ansi_from_output() -> None:
    obs = parse_tool_output(
        "Bash", {"command": "pytest"}, "\x1b[32m5 passed\x1b[0m in 0.10s"
    )
    assert obs is not None
    assert "\x1b" not in obs.narrative
    assert "5 passed" in obs.narrative


def test_unknown_tool_uses_generic_handler() -> None:
    obs = parse_tool_output("mcp__docs__lookup", {"q": "x"}, "Useful documentation text")
    assert obs is not None
    assert obs.title == "Used mcp__docs__lookup"
    assert parse_tool_output("mcp__docs__lookup", {}, "") is None


def test_parse_never_raises_on_weird_input() -> None:
    assert parse_tool_output("Read", ["not", "a", "dict"], object()) is None
    assert parse_tool_output("Grep", None, None) is None


def test_assistant_text_conversation_and_decision() -> None:
    assert parse_assistant_text("ok") is None
    assert parse_assistant_text("I'll look into that for you now.") is None

    conversation = parse_assistant_text("The parser handles quoted strings and escapes.")
    assert conversation is not None
    assert conversation.type == "conversation"

    decision = parse_assistant_text(
        "We decided to use SQLite FTS5 instead of a separate search server."
    )
    assert decision is not None
    assert decision.type == "decision"
    assert decision.concepts == ["design-rationale"]


def test_assistant_text_long_narrative_is_truncated() -> None:
    obs = parse_assistant_text("# Heading\n" + "word " * 400, message_id="m1")
    assert obs is not None
    assert obs.title == "Heading"
    assert obs.narrative.endswith("...")
    assert obs.tool_call_id == "m1"


def test_meta_observation_detection() -> None:
    assert is_meta_observation("Read", {"file_path": "/home/u/.agentmem/memory.sqlite"})
    assert is_meta_observation("Edit", {"file_path": "notes/session-memory.md"})
    assert not is_meta_observation("Read", {"file_path": "/src/app.py"})
    assert not is_meta_observation("Bash", {"command": "cat session-memory.md"})


def test_build_observation_text_joins_fields() -> None:
    obs = parse_tool_output("Grep", {"pattern": "TODO", "path": "src"}, "src/a.py:1: TODO")
    assert obs is not None
    text = build_observation_text(obs)
    assert text.startswith('Searched for "TODO"')
    assert "pattern: TODO" in text
    assert "how-it-works" in text


def test_structured_output_is_stripped_of_ansi() -> None:
    from_dict = parse_tool_output(
        "Bash", {"command": "pytest"}, {"stdout": "\x1b[31m2 failed\x1b[0m, 3 passed", "code": 1}
    )
    assert from_dict is not None
    assert from_dict.narrative == "2 failed, 3 passed"

    from_list = parse_tool_output(
        "Bash", {"command": "pytest"}, ["\x1b[1mcollected 5 items\x1b[0m", "\x1b]0;title\x07done"]
    )
    assert from_list is not None
    assert from_list.narrative == "collected 5 items\ndone"
