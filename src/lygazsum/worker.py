from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import Config
from .llm.analyzer import Analyzer
from .models import AnalysisStatus
from .pipelines.content_fetch import fetch_and_prepare
from .processor import JOB_NAME_ANALYZER, process_single_content
from .storage import list_analysis_candidates, record_job_state
from .utils import log_event, utc_now_iso


@dataclass
class BatchSummary:
    checked: int = 0
    ai_attempts: int = 0
    completed: int = 0
    partially_completed: int = 0
    failed_or_retrying: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def message(self) -> str:
        text = (
            f"Checked {self.checked} record(s). "
            f"Attempted {self.ai_attempts} AI analysis(es). "
            f"Results: {self.completed} completed, {self.partially_completed} partially completed, "
            f"{self.failed_or_retrying} failed/retrying, {self.skipped} skipped."
        )
        if self.errors:
            text += f" Encountered {len(self.errors)} system error(s)."
        return text + f" Duration: {self.duration_seconds:.2f}s."

    def details(self) -> dict[str, int]:
        return {
            "checked": self.checked,
            "aiAttempts": self.ai_attempts,
            "completed": self.completed,
            "partiallyCompleted": self.partially_completed,
            "failedOrRetrying": self.failed_or_retrying,
            "skipped": self.skipped,
        }

    def to_payload(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message(),
            "details": self.details(),
            "errors": list(self.errors),
        }


def run_analysis_batch(
    conn: Any,
    config: Config,
    analyzer: Analyzer,
    logger: logging.Logger,
    *,
    fetcher: Callable[..., Any] = fetch_and_prepare,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchSummary:
    analysis = config.analysis
    summary = BatchSummary()
    started = time.monotonic()
    log_event(
        logger,
        logging.INFO,
        "analysis_run_start",
        model=config.llm.model,
        max_analyses=analysis.max_analyses_per_run,
        fetch_limit=analysis.db_fetch_limit,
        max_regular=analysis.max_regular_attempts,
        max_shortened=analysis.max_shortened_attempts,
    )

    candidates = []
    if analysis.max_analyses_per_run > 0:
        try:
            candidates = list_analysis_candidates(
                conn,
                max_regular_attempts=analysis.max_regular_attempts,
                max_shortened_attempts=analysis.max_shortened_attempts,
                limit=analysis.db_fetch_limit,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "candidate_query_failed", error=str(exc))
            summary.errors.append(f"DB error fetching candidates: {exc}")
    log_event(logger, logging.INFO, "analysis_candidates", count=len(candidates))

    delay_seconds = analysis.inter_record_delay_ms / 1000
    for index, record in enumerate(candidates):
        if summary.ai_attempts >= analysis.max_analyses_per_run:
            log_event(
                logger,
                logging.INFO,
                "analysis_limit_reached",
                limit=analysis.max_analyses_per_run,
                next_content_id=record.id,
            )
            break
        summary.checked += 1
        result = process_single_content(
            conn,
            record,
            config=config,
            analyzer=analyzer,
            logger=logger,
            fetcher=fetcher,
        )
        if result.analysis_performed:
            summary.ai_attempts += 1
        if result.system_error:
            summary.errors.append(result.system_error)
        elif result.skipped_by_category:
            summary.skipped += 1
        elif result.final_status == AnalysisStatus.COMPLETED:
            summary.completed += 1
        elif result.final_status == AnalysisStatus.PARTIALLY_COMPLETED:
            summary.partially_completed += 1
        elif result.final_status is not None:
            summary.failed_or_retrying += 1

        is_last = index == len(candidates) - 1
        if not is_last and summary.ai_attempts < analysis.max_analyses_per_run and delay_seconds > 0:
            sleep(delay_seconds)

    summary.duration_seconds = time.monotonic() - started
    record_run(conn, JOB_NAME_ANALYZER, summary.to_payload(), logger)
    log_event(
        logger,
        logging.INFO,
        "analysis_run_finished",
        checked=summary.checked,
        ai_attempts=summary.ai_attempts,
        completed=summary.completed,
        partially_completed=summary.partially_completed,
        failed_or_retrying=summary.failed_or_retrying,
        skipped=summary.skipped,
        errors=len(summary.errors),
    )
    return summary


def record_run(conn: Any, job_name: str, notes: dict[str, object], logger: logging.Logger) -> None:
    try:
        record_job_state(conn, job_name, utc_now_iso(), notes)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "job_state_write_failed", job=job_name, error=str(exc))
