from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from .config import Config
from .errors import ErrorType, FetchError, is_rescue_marker, is_transient
from .llm.analyzer import Analyzer
from .models import (
    AnalysisStatus,
    AnalysisSuccess,
    AnalyzedContentRecord,
    AttemptKind,
    AttemptOutcome,
    ErrorDetail,
    ProcessResult,
    SUCCESS_STATUSES,
    Transition,
)
from .pipelines.content_fetch import fetch_and_prepare
from .prompts import build_regular_prompt, build_shortened_prompt, should_skip_analysis, skip_reason
from .state_machine import (
    RetryLimits,
    attempt_kind_for,
    invariant_violations,
    resolve_attempt,
    skip_transition,
    start_transition,
)
from .storage import apply_transition, claim_content, get_category_code_for_url
from .utils import log_event, utc_now

JOB_NAME_ANALYZER = "analyze-pending-agendas"
LEASE_LOST = "lease_lost"


def process_single_content(
    conn: Any,
    record: AnalyzedContentRecord,
    *,
    config: Config,
    analyzer: Analyzer,
    logger: logging.Logger,
    fetcher: Callable[..., Any] = fetch_and_prepare,
    now: Callable[[], datetime] = utc_now,
) -> ProcessResult:
    """Run one analysis attempt for ``record`` and persist where it ends up.

    Failures inside the attempt are recorded on the row and never raised. Once
    the lease is claimed the terminal write always runs, even on interrupt.
    """
    limits = RetryLimits.from_config(config.analysis)
    kind = attempt_kind_for(record, limits)
    if kind is None:
        log_event(
            logger,
            logging.WARNING,
            "content_not_eligible",
            content_id=record.id,
            status=record.status.value,
            attempts=record.analysis_attempts,
            shortened_attempts=record.shortened_analysis_attempts,
        )
        return ProcessResult(
            record_id=record.id,
            final_status=record.status,
            analysis_performed=False,
            skipped_by_category=False,
            error_message="record is not eligible for analysis",
        )

    category_code = _lookup_category(conn, record, logger)
    if should_skip_analysis(
        category_code,
        config.analysis.allowed_category_codes,
        config.analysis.excluded_category_codes,
    ):
        return _skip(conn, record, category_code, logger)

    start = start_transition(record, kind, now())
    try:
        claimed = claim_content(conn, record.id, record.status, start)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "content_claim_failed",
            content_id=record.id,
            error=str(exc),
        )
        return ProcessResult(
            record_id=record.id,
            final_status=record.status,
            analysis_performed=False,
            skipped_by_category=False,
            error_message=f"Claim failed: {exc}",
            system_error=f"Claim failed for ID {record.id}: {exc}",
        )
    if not claimed:
        log_event(logger, logging.WARNING, "content_claim_lost", content_id=record.id)
        return ProcessResult(
            record_id=record.id,
            final_status=None,
            analysis_performed=False,
            skipped_by_category=False,
            error_message="record was claimed by another run",
        )
    log_event(
        logger,
        logging.INFO,
        "content_processing_started",
        content_id=record.id,
        kind=kind.value,
        attempt=_attempt_label(record, kind, limits),
        url=record.source_url,
        after_rescue=is_rescue_marker(record.error_type),
    )

    outcome: AttemptOutcome | None = None
    analysis_performed = False
    transition: Transition | None = None
    write_error: str | None = None
    try:
        outcome, analysis_performed = _run_attempt(record, kind, config, analyzer, logger, fetcher)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "content_pipeline_error",
            content_id=record.id,
            error=str(exc),
        )
        outcome = AttemptOutcome.failure(
            ErrorDetail(f"Pipeline error: {exc}", ErrorType.PIPELINE_ERROR)
        )
    finally:
        if outcome is None:
            outcome = AttemptOutcome.failure(None)
        transition = resolve_attempt(record, kind, outcome, limits, now())
        write_error = _write_terminal(conn, record, start, transition, limits, logger)

    if write_error == LEASE_LOST:
        return ProcessResult(
            record_id=record.id,
            final_status=None,
            analysis_performed=analysis_performed,
            skipped_by_category=False,
            error_message="lease was taken over before the result was written",
        )
    if write_error is not None:
        return ProcessResult(
            record_id=record.id,
            final_status=start.status,
            analysis_performed=analysis_performed,
            skipped_by_category=False,
            error_message=write_error,
            system_error=write_error,
        )
    return ProcessResult(
        record_id=record.id,
        final_status=transition.status,
        analysis_performed=analysis_performed,
        skipped_by_category=False,
        error_message=None if transition.status in SUCCESS_STATUSES else transition.error_message,
    )


def _run_attempt(
    record: AnalyzedContentRecord,
    kind: AttemptKind,
    config: Config,
    analyzer: Analyzer,
    logger: logging.Logger,
    fetcher: Callable[..., Any],
) -> tuple[AttemptOutcome, bool]:
    analysis = config.analysis
    max_length = (
        analysis.max_content_length_chars
        if kind == AttemptKind.REGULAR
        else analysis.shortened_content_length_chars
    )
    try:
        content = fetcher(
            record.source_url,
            max_length=max_length,
            timeout_seconds=analysis.content_fetch_timeout_seconds,
            logger=logger,
            request_timeout_seconds=config.http.timeout_seconds,
            user_agent=config.http.user_agent,
            max_retries=config.http.max_retries,
            backoff_seconds=config.http.backoff_seconds,
            tag=f"{JOB_NAME_ANALYZER}-contentFetch-{record.id}",
        )
    except FetchError as exc:
        message = f"Content fetch error for ID {record.id}: {exc}"
        log_event(
            logger,
            logging.WARNING,
            "content_fetch_error",
            content_id=record.id,
            error_type=exc.error_type.value,
            error=str(exc),
        )
        return AttemptOutcome.failure(ErrorDetail(message, exc.error_type)), False

    if kind == AttemptKind.REGULAR:
        prompt = build_regular_prompt(content.text, truncated=content.truncated)
    else:
        prompt = build_shortened_prompt(
            content.text,
            truncated=content.truncated,
            previous_error=record.error_message,
            previous_error_type=record.error_type,
        )

    log_event(
        logger,
        logging.INFO,
        "content_analysis_call",
        content_id=record.id,
        kind=kind.value,
        prompt_chars=len(prompt),
    )
    result = analyzer.analyze(prompt)
    if isinstance(result, AnalysisSuccess):
        return AttemptOutcome.success(result.result), True
    return AttemptOutcome.failure(result.error), True


def _lookup_category(conn: Any, record: AnalyzedContentRecord, logger: logging.Logger) -> int | None:
    try:
        category_code = get_category_code_for_url(conn, record.source_url)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "category_lookup_failed",
            content_id=record.id,
            error=str(exc),
        )
        return None
    log_event(
        logger,
        logging.DEBUG,
        "category_lookup",
        content_id=record.id,
        category_code=category_code,
    )
    return category_code


def _skip(
    conn: Any,
    record: AnalyzedContentRecord,
    category_code: int | None,
    logger: logging.Logger,
) -> ProcessResult:
    transition = skip_transition(record, skip_reason(category_code))
    try:
        written = claim_content(conn, record.id, record.status, transition)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "content_skip_write_failed",
            content_id=record.id,
            error=str(exc),
        )
        return ProcessResult(
            record_id=record.id,
            final_status=record.status,
            analysis_performed=False,
            skipped_by_category=False,
            error_message=f"Skip write failed: {exc}",
            system_error=f"Skip write failed for ID {record.id}: {exc}",
        )
    if not written:
        log_event(logger, logging.WARNING, "content_claim_lost", content_id=record.id)
        return ProcessResult(
            record_id=record.id,
            final_status=None,
            analysis_performed=False,
            skipped_by_category=False,
            error_message="record was claimed by another run",
        )
    log_event(
        logger,
        logging.INFO,
        "content_skipped",
        content_id=record.id,
        category_code=category_code,
    )
    return ProcessResult(
        record_id=record.id,
        final_status=AnalysisStatus.SKIPPED,
        analysis_performed=False,
        skipped_by_category=True,
    )


def _write_terminal(
    conn: Any,
    record: AnalyzedContentRecord,
    start: Transition,
    transition: Transition,
    limits: RetryLimits,
    logger: logging.Logger,
) -> str | None:
    """Persist ``transition`` under the lease taken by ``start``.

    Returns ``None`` once written, ``LEASE_LOST`` when another run owns the row
    and an error message when the write itself failed.
    """
    for problem in invariant_violations(transition, limits):
        log_event(
            logger,
            logging.WARNING,
            "transition_invariant_violated",
            content_id=record.id,
            problem=problem,
        )
    try:
        written = apply_transition(conn, record.id, start.processing_started_at, transition)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "content_write_failed",
            content_id=record.id,
            status=transition.status.value,
            error=str(exc),
        )
        return f"Terminal write failed for ID {record.id}: {exc}"
    if not written:
        log_event(
            logger,
            logging.WARNING,
            "content_lease_lost",
            content_id=record.id,
            lease=start.processing_started_at,
            status=transition.status.value,
        )
        return LEASE_LOST
    log_event(
        logger,
        logging.INFO,
        "content_transition",
        content_id=record.id,
        status=transition.status.value,
        attempts=transition.analysis_attempts,
        shortened_attempts=transition.shortened_analysis_attempts,
        error_type=transition.error_type.value if transition.error_type else None,
        transient=is_transient(transition.error_type),
    )
    return None


def _attempt_label(record: AnalyzedContentRecord, kind: AttemptKind, limits: RetryLimits) -> str:
    if kind == AttemptKind.REGULAR:
        return f"{record.analysis_attempts + 1}/{limits.max_regular_attempts}"
    return f"{record.shortened_analysis_attempts + 1}/{limits.max_shortened_attempts}"
