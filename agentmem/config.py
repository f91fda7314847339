from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/agentmem/config.json").expanduser()
DEFAULT_DATA_DIR = Path("~/.agentmem").expanduser()

CONFIG_ENV_OVERRIDES = {
    "data_dir": "AGENTMEM_DATA_DIR",
    "db_path": "AGENTMEM_DB_PATH",
    "index_dir": "AGENTMEM_INDEX_DIR",
    "model_cache_dir": "AGENTMEM_MODEL_CACHE_DIR",
    "embedding_model": "AGENTMEM_EMBEDDING_MODEL",
    "embedding_dimension": "AGENTMEM_EMBEDDING_DIMENSION",
    "embedding_disabled": "AGENTMEM_EMBEDDING_DISABLED",
    "summary_provider": "AGENTMEM_SUMMARY_PROVIDER",
    "summary_model": "AGENTMEM_SUMMARY_MODEL",
    "llm_api_key": "AGENTMEM_LLM_API_KEY",
    "llm_base_url": "AGENTMEM_LLM_BASE_URL",
}

_INT_FIELDS = {
    "embedding_dimension",
    "embedding_max_chars",
    "embedding_batch_size",
    "queue_max_retries",
    "queue_backlog_warning",
    "rrf_k",
    "context_search_limit",
    "context_recent_sessions",
    "context_recent_observations",
    "enhance_rate_limit",
    "enhance_min_output_chars",
}

_FLOAT_FIELDS = {
    "embedding_init_timeout_s",
    "queue_retry_delay_s",
    "context_timeout_s",
    "search_timeout_s",
    "context_min_score",
    "enhance_rate_window_s",
    "llm_timeout_s",
    "preload_delay_s",
}

_BOOL_FIELDS = {"embedding_disabled", "enhance_enabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("AGENTMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def parse_config_value(key: str, raw: str) -> Any:
    """Parse a command line value for ``key``; raises ``ValueError`` when it does not fit."""
    if key not in {f.name for f in fields(AgentMemConfig)}:
        raise ValueError(f"unknown config key: {key}")
    if key in _INT_FIELDS:
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be int") from exc
    if key in _FLOAT_FIELDS:
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be float") from exc
    if key in _BOOL_FIELDS:
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "off", "no"}:
            return False
        raise ValueError(f"{key} must be true or false")
    if key == "enhance_skip_tools":
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw.strip() or None


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class AgentMemConfig:
    data_dir: str = str(DEFAULT_DATA_DIR)
    # Derived from data_dir when left empty.
    db_path: str | None = None
    index_dir: str | None = None
    model_cache_dir: str | None = None

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dimension: int = 384
    embedding_disabled: bool = False
    embedding_max_chars: int = 8000
    embedding_batch_size: int = 32
    embedding_init_timeout_s: float = 300.0
    preload_delay_s: float = 5.0

    queue_retry_delay_s: float = 15.0
    queue_max_retries: int = 2
    queue_backlog_warning: int = 100

    rrf_k: int = 60
    context_timeout_s: float = 15.0
    search_timeout_s: float = 10.0
    context_min_score: float = 0.005
    context_search_limit: int = 15
    context_recent_sessions: int = 5
    context_recent_observations: int = 30

    enhance_enabled: bool = True
    enhance_rate_limit: int = 10
    enhance_rate_window_s: float = 60.0
    enhance_min_output_chars: int = 50
    summary_provider: str | None = None
    summary_model: str | None = None
    llm_api_key: str | None = None
    llm_base_url: str | None = None
    llm_timeout_s: float = 30.0

    enhance_skip_tools: list[str] = field(default_factory=lambda: ["Glob", "WebSearch"])

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return Path(self.data_dir).expanduser() / "memory.sqlite"

    def resolved_index_dir(self) -> Path:
        if self.index_dir:
            return Path(self.index_dir).expanduser()
        return Path(self.data_dir).expanduser() / "vectors"

    def resolved_model_cache_dir(self) -> Path:
        if self.model_cache_dir:
            return Path(self.model_cache_dir).expanduser()
        return Path(self.data_dir).expanduser() / "models"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("llm_api_key"):
            data["llm_api_key"] = "***"
        return data


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_str_list(value: object, *, key: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    warnings.warn(f"Invalid list for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return None


def load_config(path: Path | None = None) -> AgentMemConfig:
    cfg = AgentMemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            warnings.warn(
                f"Ignoring invalid config json at {config_path}", RuntimeWarning, stacklevel=2
            )
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_value(cfg: AgentMemConfig, key: str, value: object) -> None:
    if key in _INT_FIELDS:
        setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
    elif key in _FLOAT_FIELDS:
        setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
    elif key in _BOOL_FIELDS:
        setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
    elif key == "enhance_skip_tools":
        parsed = _coerce_str_list(value, key=key)
        if parsed is not None:
            cfg.enhance_skip_tools = parsed
    else:
        setattr(cfg, key, value)


def _apply_dict(cfg: AgentMemConfig, data: dict[str, Any]) -> AgentMemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        _apply_value(cfg, key, value)
    return cfg


def _apply_env(cfg: AgentMemConfig) -> AgentMemConfig:
    for key, value in get_env_overrides().items():
        _apply_value(cfg, key, value)
    cfg.context_min_score = _parse_float(
        os.getenv("AGENTMEM_CONTEXT_MIN_SCORE"), cfg.context_min_score, key="context_min_score"
    )
    cfg.rrf_k = _parse_int(os.getenv("AGENTMEM_RRF_K"), cfg.rrf_k, key="rrf_k")
    cfg.enhance_rate_limit = _parse_int(
        os.getenv("AGENTMEM_ENHANCE_RATE_LIMIT"),
        cfg.enhance_rate_limit,
        key="enhance_rate_limit",
    )
    cfg.enhance_enabled = _parse_bool(os.getenv("AGENTMEM_ENHANCE"), cfg.enhance_enabled)
    return cfg
