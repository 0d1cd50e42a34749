from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float


@dataclass(frozen=True)
class AnalysisConfig:
    max_regular_attempts: int
    max_shortened_attempts: int
    db_fetch_limit: int
    max_analyses_per_run: int
    inter_record_delay_ms: int
    max_content_length_chars: int
    shortened_content_length_chars: int
    content_fetch_timeout_seconds: int
    allowed_category_codes: list[int]
    excluded_category_codes: list[int]


@dataclass(frozen=True)
class RescueConfig:
    stuck_threshold_minutes: int
    limit_per_run: int
    inter_record_delay_ms: int


@dataclass(frozen=True)
class LlmConfig:
    provider: str
    model: str
    base_url: str
    temperature: float
    max_output_tokens: int
    timeout_seconds: int
    safety_threshold: str
    thinking_budget: int


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    http: HttpConfig
    analysis: AnalysisConfig
    rescue: RescueConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "LyGazetteSummarizerBot/2.1",
        "max_retries": 2,
        "backoff_seconds": 1.0,
    },
    "analysis": {
        "max_regular_attempts": 3,
        "max_shortened_attempts": 3,
        "db_fetch_limit": 10,
        "max_analyses_per_run": 1,
        "inter_record_delay_ms": 600,
        "max_content_length_chars": 750000,
        "shortened_content_length_chars": 200000,
        "content_fetch_timeout_seconds": 60,
        "allowed_category_codes": [3],
        "excluded_category_codes": [],
    },
    "rescue": {
        "stuck_threshold_minutes": 15,
        "limit_per_run": 20,
        "inter_record_delay_ms": 100,
    },
    "llm": {
        "provider": "google",
        "model": "gemini-2.5-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "temperature": 0.3,
        "max_output_tokens": 60000,
        "timeout_seconds": 300,
        "safety_threshold": "BLOCK_MEDIUM_AND_ABOVE",
        "thinking_budget": 0,
    },
}

CONFIG_PATH_ENV = "LG_CONFIG"
DATA_DIR_ENV = "LG_DATA_DIR"
GEMINI_API_KEY_ENV = "GEMINI_API_KEY"


def get_state_db_path() -> str:
    data_dir = os.environ.get(DATA_DIR_ENV, DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def get_gemini_api_key() -> str | None:
    value = os.environ.get(GEMINI_API_KEY_ENV, "").strip()
    return value or None


def load_config(path: str | None = None) -> Config:
    cfg = load_config_dict(path)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_config_dict(path: str | None = None) -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get(CONFIG_PATH_ENV) or None
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping")
        cfg = _merge(cfg, loaded)
    data_dir = os.environ.get(DATA_DIR_ENV)
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = os.path.join(data_dir, "state.sqlite3")
    return cfg


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    analysis = cfg["analysis"]
    for key in ("max_regular_attempts", "max_shortened_attempts", "db_fetch_limit"):
        if analysis[key] < 1:
            errors.append(f"config.analysis.{key} must be >= 1")
    if analysis["max_analyses_per_run"] < 0:
        errors.append("config.analysis.max_analyses_per_run must be >= 0")
    if analysis["shortened_content_length_chars"] > analysis["max_content_length_chars"]:
        errors.append(
            "config.analysis.shortened_content_length_chars must not exceed max_content_length_chars"
        )
    if cfg["http"]["max_retries"] < 1:
        errors.append("config.http.max_retries must be >= 1")
    if cfg["http"]["timeout_seconds"] < 1:
        errors.append("config.http.timeout_seconds must be >= 1")
    if cfg["rescue"]["stuck_threshold_minutes"] < 1:
        errors.append("config.rescue.stuck_threshold_minutes must be >= 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int):
                errors.append(f"{path} must be a list of int")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    analysis_cfg = cfg["analysis"]
    rescue_cfg = cfg["rescue"]
    llm_cfg = cfg["llm"]

    paths = PathsConfig(
        data_dir=str(paths_cfg["data_dir"]),
        state_db=str(paths_cfg["state_db"]),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=float(http_cfg["backoff_seconds"]),
    )
    analysis = AnalysisConfig(
        max_regular_attempts=int(analysis_cfg["max_regular_attempts"]),
        max_shortened_attempts=int(analysis_cfg["max_shortened_attempts"]),
        db_fetch_limit=int(analysis_cfg["db_fetch_limit"]),
        max_analyses_per_run=int(analysis_cfg["max_analyses_per_run"]),
        inter_record_delay_ms=int(analysis_cfg["inter_record_delay_ms"]),
        max_content_length_chars=int(analysis_cfg["max_content_length_chars"]),
        shortened_content_length_chars=int(analysis_cfg["shortened_content_length_chars"]),
        content_fetch_timeout_seconds=int(analysis_cfg["content_fetch_timeout_seconds"]),
        allowed_category_codes=list(analysis_cfg["allowed_category_codes"]),
        excluded_category_codes=list(analysis_cfg["excluded_category_codes"]),
    )
    rescue = RescueConfig(
        stuck_threshold_minutes=int(rescue_cfg["stuck_threshold_minutes"]),
        limit_per_run=int(rescue_cfg["limit_per_run"]),
        inter_record_delay_ms=int(rescue_cfg["inter_record_delay_ms"]),
    )
    llm = LlmConfig(
        provider=str(llm_cfg["provider"]),
        model=str(llm_cfg["model"]),
        base_url=str(llm_cfg["base_url"]),
        temperature=float(llm_cfg["temperature"]),
        max_output_tokens=int(llm_cfg["max_output_tokens"]),
        timeout_seconds=int(llm_cfg["timeout_seconds"]),
        safety_threshold=str(llm_cfg["safety_threshold"]),
        thinking_budget=int(llm_cfg["thinking_budget"]),
    )
    return Config(paths=paths, http=http, analysis=analysis, rescue=rescue, llm=llm)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
