from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ConfigError, get_gemini_api_key, load_config
from .errors import AnalyzerConfigError
from .llm.analyzer import build_analyzer
from .pipelines.content_fetch import fetch_and_prepare
from .rescuer import rescue_stuck_analyses
from .storage import init_db
from .utils import configure_logging, log_event
from .worker import run_analysis_batch

app = FastAPI(title="LY Gazette Summarizer Jobs API")


class JobRunResponse(BaseModel):
    success: bool
    message: str
    details: dict[str, Any] = {}
    errors: list[str] = []


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/jobs/analyze-pending", response_model=JobRunResponse)
def analyze_pending():
    logger = configure_logging("lygazsum.analyzer")
    try:
        config = load_config()
    except ConfigError as exc:
        return _failure(logger, "config_error", f"Configuration error: {exc}")
    api_key = get_gemini_api_key()
    if not api_key:
        return _failure(logger, "missing_api_key", "Missing GEMINI_API_KEY environment variable!")
    try:
        analyzer = build_analyzer(config, api_key=api_key, logger=logger)
    except AnalyzerConfigError as exc:
        return _failure(logger, "analyzer_config_error", f"Analyzer configuration error: {exc}")
    try:
        conn = init_db(config.paths.state_db)
    except Exception as exc:  # noqa: BLE001
        return _failure(logger, "db_unavailable", f"Database unavailable: {exc}")
    try:
        summary = run_analysis_batch(conn, config, analyzer, logger, fetcher=fetch_and_prepare)
    except Exception as exc:  # noqa: BLE001
        return _failure(logger, "analysis_run_crashed", f"Critical error: {exc}")
    finally:
        conn.close()
    return JobRunResponse(**summary.to_payload())


@app.post("/jobs/rescue-stuck", response_model=JobRunResponse)
def rescue_stuck():
    logger = configure_logging("lygazsum.rescuer")
    try:
        config = load_config()
    except ConfigError as exc:
        return _failure(logger, "config_error", f"Configuration error: {exc}")
    try:
        conn = init_db(config.paths.state_db)
    except Exception as exc:  # noqa: BLE001
        return _failure(logger, "db_unavailable", f"Database unavailable: {exc}")
    try:
        summary = rescue_stuck_analyses(conn, config, logger)
    except Exception as exc:  # noqa: BLE001
        return _failure(logger, "rescue_run_crashed", f"Critical error: {exc}")
    finally:
        conn.close()
    return JobRunResponse(**summary.to_payload())


def _failure(logger: logging.Logger, event: str, message: str) -> JSONResponse:
    log_event(logger, logging.ERROR, event, error=message)
    body = JobRunResponse(success=False, message=message, errors=[message])
    return JSONResponse(body.model_dump(), status_code=500)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("lygazsum")
    except Exception:  # noqa: BLE001
        return "unknown"
