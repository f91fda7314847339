import json
from pathlib import Path

import pytest

from agentmem.config import (
    AgentMemConfig,
    get_config_path,
    get_env_overrides,
    load_config,
    parse_config_value,
    read_config_file,
    write_config_file,
)


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="config must be an object"):
        read_config_file(config_path)


def test_read_config_file_missing_or_empty_is_empty(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "missing.json") == {}
    empty = tmp_path / "empty.json"
    empty.write_text("  \n")
    assert read_config_file(empty) == {}


def test_write_then_load_config(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.json"
    write_config_file({"rrf_k": 40, "summary_provider": "anthropic"}, config_path)

    cfg = load_config(config_path)

    assert cfg.rrf_k == 40
    assert cfg.summary_provider == "anthropic"
    assert json.loads(config_path.read_text())["rrf_k"] == 40


def test_config_path_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "alt.json"
    monkeypatch.setenv("AGENTMEM_CONFIG", str(target))
    assert get_config_path() == target


def test_defaults_match_documented_values() -> None:
    cfg = AgentMemConfig()
    assert cfg.embedding_model == "BAAI/bge-small-en-v1.5"
    assert cfg.embedding_dimension == 384
    assert cfg.rrf_k == 60
    assert cfg.context_min_score == 0.005
    assert cfg.queue_max_retries == 2
    assert cfg.queue_retry_delay_s == 15.0
    assert cfg.enhance_rate_limit == 10
    assert cfg.enhance_skip_tools == ["Glob", "WebSearch"]


def test_paths_derive_from_data_dir(tmp_path: Path) -> None:
    cfg = AgentMemConfig(data_dir=str(tmp_path))
    assert cfg.resolved_db_path() == tmp_path / "memory.sqlite"
    assert cfg.resolved_index_dir() == tmp_path / "vectors"
    assert cfg.resolved_model_cache_dir() == tmp_path / "models"

    cfg.db_path = str(tmp_path / "other.sqlite")
    assert cfg.resolved_db_path() == tmp_path / "other.sqlite"


def test_env_overrides_apply_after_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"embedding_model": "from-file", "rrf_k": 50}))
    monkeypatch.setenv("AGENTMEM_EMBEDDING_MODEL", "from-env")
    monkeypatch.setenv("AGENTMEM_EMBEDDING_DISABLED", "true")
    monkeypatch.setenv("AGENTMEM_RRF_K", "70")
    monkeypatch.setenv("AGENTMEM_ENHANCE", "0")

    assert get_env_overrides()["embedding_model"] == "from-env"
    cfg = load_config(config_path)

    assert cfg.embedding_model == "from-env"
    assert cfg.embedding_disabled is True
    assert cfg.rrf_k == 70
    assert cfg.enhance_enabled is False


def test_invalid_values_warn_and_keep_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"queue_max_retries": "many", "context_min_score": "high", "unknown": 1})
    )
    with pytest.warns(RuntimeWarning):
        cfg = load_config(config_path)
    assert cfg.queue_max_retries == 2
    assert cfg.context_min_score == 0.005


def test_invalid_json_file_warns_and_uses_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{oops")
    with pytest.warns(RuntimeWarning, match="invalid config json"):
        cfg = load_config(config_path)
    assert cfg.rrf_k == 60


def test_skip_tools_accepts_comma_string(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"enhance_skip_tools": "Glob, Read"}))
    cfg = load_config(config_path)
    assert cfg.enhance_skip_tools == ["Glob", "Read"]


def test_to_dict_masks_api_key() -> None:
    cfg = AgentMemConfig(llm_api_key="sk-secret")
    assert cfg.to_dict()["llm_api_key"] == "***"


def test_parse_config_value_coerces_by_field() -> None:
    assert parse_config_value("rrf_k", "40") == 40
    assert parse_config_value("context_min_score", "0.01") == 0.01
    assert parse_config_value("enhance_enabled", "off") is False
    assert parse_config_value("enhance_skip_tools", "Glob, Bash,") == ["Glob", "Bash"]
    assert parse_config_value("summary_model", "  ") is None


@pytest.mark.parametrize(
    "key, raw, message",
    [
        ("nope", "1", "unknown config key"),
        ("rrf_k", "1.5", "rrf_k must be int"),
        ("context_timeout_s", "soon", "must be float"),
        ("embedding_disabled", "maybe", "must be true or false"),
    ],
)
def test_parse_config_value_rejects(key: str, raw: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_config_value(key, raw)
