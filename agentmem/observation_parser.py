"""Rule-based conversion of tool calls and assistant replies into observations.

Everything here is pure: no I/O, no model calls. Unrecognized or uninformative
input produces ``None`` and no function in this module raises.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from .redaction import clean_value, strip_ansi
from .store.types import Observation

logger = logging.getLogger(__name__)

SKIP_TOOLS = frozenset(
    {
        "todowrite",
        "todoread",
        "exitplanmode",
        "enterplanmode",
        "killshell",
        "bashoutput",
        "listmcpresourcestool",
        "slashcommand",
    }
)

# Tools whose observation is built mostly from their output.
OUTPUT_DERIVED_TOOLS = frozenset({"bash", "webfetch", "websearch"})

MIN_INFORMATIVE_OUTPUT_CHARS = 8
MIN_ASSISTANT_TEXT_CHARS = 20
OUTPUT_EXCERPT_CHARS = 500
ASSISTANT_NARRATIVE_CHARS = 1000
TITLE_CHARS = 80

DOC_EXTENSIONS = (".md", ".mdx", ".markdown", ".txt", ".rst", ".adoc")
META_PATH_MARKERS = ("session-memory", "/.agentmem/")

_GIT_WRITE_RE = re.compile(
    r"\bgit\s+(?:commit|push|merge|rebase|cherry-pick|revert|reset|tag|stash|checkout\s+-b)\b"
)
_GIT_RE = re.compile(r"\bgit\b")
_INSTALL_RE = re.compile(
    r"\b(?:npm|pnpm|yarn|bun|pip3?|uv|poetry|cargo|go|brew|apt(?:-get)?|gem)"
    r"\s+(?:install|add|i|get|sync)\b"
)
_TEST_RE = re.compile(
    r"\b(?:pytest|jest|vitest|mocha|tox|nox|"
    r"(?:npm|pnpm|yarn|bun|cargo|go|make)\s+(?:run\s+)?test)\b"
)
_LINT_RE = re.compile(
    r"\b(?:ruff|eslint|flake8|pylint|mypy|pyright|tsc|prettier\s+--check|cargo\s+clippy|"
    r"biome|golangci-lint)\b"
)
_BUILD_RE = re.compile(
    r"\b(?:(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?build|cargo\s+build|go\s+build|make|"
    r"gradle|mvn|webpack|vite\s+build)\b"
)
_DECISION_RE = re.compile(
    r"\b(?:decided|decision|we should|i recommend|recommend (?:using|that)|going with|"
    r"opted for|trade-?off|instead of)\b",
    re.IGNORECASE,
)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _output_text(output: Any) -> str:
    if output is None:
        return ""
    output = clean_value(output, strip_ansi)
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        for key in ("output", "stdout", "content", "text", "result"):
            value = output.get(key)
            if isinstance(value, str):
                return value
        return json.dumps(output, ensure_ascii=False)
    if isinstance(output, (list, tuple)):
        return "\n".join(str(item) for item in output)
    return str(output)


def _excerpt(text: str, limit: int = OUTPUT_EXCERPT_CHARS) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def _shorten(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _file_name(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1] or path


def _is_doc(path: str) -> bool:
    return path.lower().endswith(DOC_EXTENSIONS)


def _str(inp: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = inp.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _line_delta_summary(old: str, new: str) -> str:
    old_lines = len(old.split("\n"))
    new_lines = len(new.split("\n"))
    diff = new_lines - old_lines
    if diff == 0:
        return f"Changed {old_lines} line(s)"
    if diff > 0:
        return f"Added {diff} line(s) ({old_lines} -> {new_lines})"
    return f"Removed {abs(diff)} line(s) ({old_lines} -> {new_lines})"


def detect_command_type(command: str) -> tuple[str, list[str]]:
    """Classify a shell command into an observation type and concepts."""

    cmd = command.lower()
    if _GIT_WRITE_RE.search(cmd):
        return "edit", ["what-changed"]
    if _GIT_RE.search(cmd):
        return "explore", ["how-it-works"]
    if _INSTALL_RE.search(cmd):
        return "edit", ["what-changed"]
    if _TEST_RE.search(cmd):
        return "analyze", ["testing"]
    if _LINT_RE.search(cmd):
        return "analyze", ["pattern"]
    if _BUILD_RE.search(cmd):
        return "analyze", ["workflow"]
    return "explore", ["how-it-works"]


def _parse_read(inp: dict[str, Any], output: str) -> Observation | None:
    path = _str(inp, "file_path", "path")
    if not path:
        return None
    offset = inp.get("offset")
    limit = inp.get("limit")
    if offset or limit:
        start = int(offset or 0)
        narrative = f"Read lines {start} to {start + int(limit or 100)} from {path}"
    else:
        narrative = f"Read file {path}"
    if output.strip():
        narrative = f"{narrative}\n\n{_excerpt(output)}"
    return Observation(
        type="explore",
        title=f"Read {_file_name(path)}",
        subtitle=path,
        narrative=narrative,
        files_read=[path],
        concepts=["how-it-works"],
    )


def _parse_ls(inp: dict[str, Any], output: str) -> Observation | None:
    path = _str(inp, "path") or "."
    entries = [line.strip() for line in output.splitlines() if line.strip()]
    narrative = f"Listed {path}"
    if entries:
        narrative = f"{narrative}: {', '.join(entries[:10])}"
        if len(entries) > 10:
            narrative += "..."
    return Observation(
        type="explore",
        title=f"Listed {_file_name(path)}",
        subtitle=path,
        narrative=narrative,
        files_read=[path],
        concepts=["project-context"],
    )


def _parse_glob(inp: dict[str, Any], output: str) -> Observation | None:
    pattern = _str(inp, "pattern")
    where = _str(inp, "path") or "current directory"
    files = [line.strip() for line in output.splitlines() if line.strip()]
    if files:
        names = ", ".join(_file_name(f) for f in files[:5])
        narrative = f"Found {len(files)} files: {names}{'...' if len(files) > 5 else ''}"
    else:
        narrative = f'Searched for pattern "{pattern}" in {where}'
    facts = [f"pattern: {pattern}"] if pattern else []
    return Observation(
        type="explore",
        title=f"Found {len(files)} files matching pattern",
        subtitle=pattern or None,
        narrative=narrative,
        facts=facts,
        concepts=["project-context"],
    )


def _parse_grep(inp: dict[str, Any], output: str) -> Observation | None:
    pattern = _str(inp, "pattern")
    if not pattern:
        return None
    where = _str(inp, "path") or "current directory"
    mode = _str(inp, "output_mode") or "files_with_matches"
    narrative = f'Searched for "{pattern}" in {where} (mode: {mode})'
    matches = [line for line in output.splitlines() if line.strip()]
    if matches:
        narrative = f"{narrative}\n\n{_excerpt(chr(10).join(matches[:20]))}"
    return Observation(
        type="explore",
        title=f'Searched for "{_shorten(pattern, 40)}"',
        subtitle=where,
        narrative=narrative,
        facts=[f"pattern: {pattern}", f"matches: {len(matches)}"],
        concepts=["how-it-works"],
    )


def _parse_write(inp: dict[str, Any], output: str) -> Observation | None:
    path = _str(inp, "file_path", "path")
    if not path:
        return None
    content = inp.get("content")
    line_count = len(content.split("\n")) if isinstance(content, str) and content else 0
    return Observation(
        type="compose" if _is_doc(path) else "implement",
        title=f"Created {_file_name(path)}",
        subtitle=path,
        narrative=f"Created new file {path} with {line_count} lines",
        files_modified=[path],
        concepts=["documentation"] if _is_doc(path) else ["what-changed"],
    )


def _parse_edit(inp: dict[str, Any], output: str) -> Observation | None:
    path = _str(inp, "file_path", "notebook_path", "path")
    if not path:
        return None
    edits = inp.get("edits")
    if isinstance(edits, list) and edits:
        narrative = f"Applied {len(edits)} edits to {path}"
    else:
        old = inp.get("old_string")
        new = inp.get("new_string")
        if isinstance(old, str) and isinstance(new, str):
            narrative = f"{_line_delta_summary(old, new)} in {path}"
        else:
            narrative = f"Modified {path}"
    return Observation(
        type="compose" if _is_doc(path) else "edit",
        title=f"Modified {_file_name(path)}",
        subtitle=path,
        narrative=narrative,
        files_modified=[path],
        concepts=["documentation"] if _is_doc(path) else ["what-changed"],
    )


def _parse_notebook_edit(inp: dict[str, Any], output: str) -> Observation | None:
    path = _str(inp, "notebook_path", "file_path")
    if not path:
        return None
    mode = _str(inp, "edit_mode") or "edit"
    cell_type = _str(inp, "cell_type") or "cell"
    return Observation(
        type="edit",
        title=f"Modified notebook {_file_name(path)}",
        subtitle=path,
        narrative=f"{mode} {cell_type} in notebook {path}",
        files_modified=[path],
        concepts=["what-changed"],
    )


def _parse_bash(inp: dict[str, Any], output: str) -> Observation | None:
    command = _str(inp, "command")
    if not command:
        return None
    obs_type, concepts = detect_command_type(command)
    if obs_type != "edit" and len(output.strip()) < MIN_INFORMATIVE_OUTPUT_CHARS:
        return None
    description = _str(inp, "description")
    narrative = _excerpt(output) if output.strip() else f"Ran {command}"
    return Observation(
        type=obs_type,
        title=f"Executed: {_shorten(command, 60)}",
        subtitle=description or None,
        narrative=narrative,
        facts=[f"command: {_shorten(command, 200)}"],
        concepts=concepts,
    )


def _parse_web_fetch(inp: dict[str, Any], output: str) -> Observation | None:
    if len(output.strip()) < MIN_INFORMATIVE_OUTPUT_CHARS:
        return None
    url = _str(inp, "url")
    return Observation(
        type="research",
        title=f"Fetched {_shorten(url, 60) if url else 'URL'}",
        subtitle=url or None,
        narrative=_excerpt(output),
        facts=[f"url: {url}"] if url else [],
        concepts=["api"],
    )


def _parse_web_search(inp: dict[str, Any], output: str) -> Observation | None:
    if len(output.strip()) < MIN_INFORMATIVE_OUTPUT_CHARS:
        return None
    query = _str(inp, "query")
    return Observation(
        type="research",
        title=f"Searched: {_shorten(query, 50) if query else 'query'}",
        subtitle=query or None,
        narrative=_excerpt(output),
        concepts=["project-context"],
    )


def _parse_task(inp: dict[str, Any], output: str) -> Observation | None:
    description = _str(inp, "description")
    prompt = _str(inp, "prompt")
    if not description and not prompt:
        return None
    narrative = f"Task: {description or 'subagent task'}"
    if prompt:
        narrative += f"\nPrompt: {_excerpt(prompt, 300)}"
    if output.strip():
        narrative += f"\nResult: {_excerpt(output, 300)}"
    return Observation(
        type="research",
        title=f"Agent task: {_shorten(description or prompt, 50)}",
        subtitle=_str(inp, "subagent_type") or None,
        narrative=narrative,
        concepts=["workflow"],
    )


def _parse_generic(tool_name: str, inp: dict[str, Any], output: str) -> Observation | None:
    if len(output.strip()) < MIN_INFORMATIVE_OUTPUT_CHARS:
        return None
    return Observation(
        type="explore",
        title=f"Used {tool_name}",
        subtitle=None,
        narrative=_excerpt(output),
        concepts=["how-it-works"],
    )


_HANDLERS: dict[str, Callable[[dict[str, Any], str], Observation | None]] = {
    "read": _parse_read,
    "ls": _parse_ls,
    "glob": _parse_glob,
    "grep": _parse_grep,
    "write": _parse_write,
    "edit": _parse_edit,
    "multiedit": _parse_edit,
    "notebookedit": _parse_notebook_edit,
    "bash": _parse_bash,
    "webfetch": _parse_web_fetch,
    "websearch": _parse_web_search,
    "task": _parse_task,
}


def parse_tool_output(
    tool_name: str,
    tool_input: Any,
    tool_output: Any,
    tool_call_id: str | None = None,
) -> Observation | None:
    """Turn one tool call into an observation, or ``None`` when it is not worth keeping."""

    try:
        name = (tool_name or "").strip()
        key = name.lower()
        if not key or key in SKIP_TOOLS:
            return None
        inp = _as_dict(tool_input)
        output = _output_text(tool_output)
        handler = _HANDLERS.get(key)
        if handler is not None:
            obs = handler(inp, output)
        else:
            obs = _parse_generic(name, inp, output)
        if obs is None:
            return None
        obs.tool_name = name
        obs.tool_call_id = tool_call_id
        return obs
    except Exception as exc:
        logger.warning(
            "tool output parse failed",
            extra={"tool_name": tool_name, "tool_call_id": tool_call_id},
            exc_info=exc,
        )
        return None


def parse_assistant_text(text: str | None, message_id: str | None = None) -> Observation | None:
    try:
        if not isinstance(text, str):
            return None
        stripped = text.strip()
        if len(stripped) < MIN_ASSISTANT_TEXT_CHARS:
            return None
        if stripped.startswith("I'll ") and len(stripped) < 100:
            return None
        first_line = next(line for line in stripped.splitlines() if line.strip())
        title = _shorten(first_line.lstrip("#").strip(), TITLE_CHARS)
        if len(stripped) > ASSISTANT_NARRATIVE_CHARS:
            narrative = stripped[:ASSISTANT_NARRATIVE_CHARS] + "..."
        else:
            narrative = stripped
        is_decision = bool(_DECISION_RE.search(stripped))
        return Observation(
            type="decision" if is_decision else "conversation",
            title=title,
            narrative=narrative,
            concepts=["design-rationale"] if is_decision else [],
            tool_name="assistant",
            tool_call_id=message_id,
        )
    except Exception as exc:
        logger.warning("assistant text parse failed", exc_info=exc)
        return None


def is_meta_observation(tool_name: str, tool_input: Any) -> bool:
    """True for file operations on the memory store's own files."""

    if (tool_name or "").lower() not in {"read", "write", "edit", "multiedit", "notebookedit"}:
        return False
    path = _str(_as_dict(tool_input), "file_path", "notebook_path")
    if not path:
        return False
    return any(marker in path for marker in META_PATH_MARKERS)


def build_observation_text(obs: Observation) -> str:
    parts = [
        obs.title,
        obs.subtitle or "",
        obs.narrative,
        " ".join(obs.facts),
        " ".join(obs.concepts),
    ]
    return " ".join(part for part in parts if part)
