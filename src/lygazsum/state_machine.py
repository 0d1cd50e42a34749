"""Status transitions for analyzed contents.

Every function here is pure: it reads a record snapshot and returns the
``Transition`` to persist. Persistence and I/O live in ``processor`` and
``rescuer``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .config import AnalysisConfig
from .errors import ErrorType
from .models import (
    AnalysisStatus,
    AnalyzedContentRecord,
    AttemptKind,
    AttemptOutcome,
    LEASED_STATUSES,
    SUCCESS_STATUSES,
    Transition,
)
from .utils import to_iso


@dataclass(frozen=True)
class RetryLimits:
    max_regular_attempts: int
    max_shortened_attempts: int

    @classmethod
    def from_config(cls, analysis: AnalysisConfig) -> "RetryLimits":
        return cls(
            max_regular_attempts=analysis.max_regular_attempts,
            max_shortened_attempts=analysis.max_shortened_attempts,
        )


@dataclass(frozen=True)
class FailureStep:
    status: AnalysisStatus
    analysis_attempts: int
    shortened_analysis_attempts: int


def attempt_kind_for(record: AnalyzedContentRecord, limits: RetryLimits) -> AttemptKind | None:
    if (
        record.status == AnalysisStatus.PENDING
        and record.analysis_attempts < limits.max_regular_attempts
    ):
        return AttemptKind.REGULAR
    if (
        record.status == AnalysisStatus.NEEDS_SHORTENED_RETRY
        and record.shortened_analysis_attempts < limits.max_shortened_attempts
    ):
        return AttemptKind.SHORTENED
    return None


def kind_for_leased_status(status: AnalysisStatus) -> AttemptKind | None:
    if status == AnalysisStatus.PROCESSING:
        return AttemptKind.REGULAR
    if status == AnalysisStatus.PROCESSING_SHORTENED:
        return AttemptKind.SHORTENED
    return None


def processing_status_for(kind: AttemptKind) -> AnalysisStatus:
    if kind == AttemptKind.REGULAR:
        return AnalysisStatus.PROCESSING
    return AnalysisStatus.PROCESSING_SHORTENED


def skip_transition(record: AnalyzedContentRecord, reason: str) -> Transition:
    return Transition(
        status=AnalysisStatus.SKIPPED,
        analysis_attempts=record.analysis_attempts,
        shortened_analysis_attempts=record.shortened_analysis_attempts,
        processing_started_at=None,
        result={"error": reason, "type": ErrorType.SKIPPED_BY_CATEGORY.value},
        error_message=reason,
        error_type=ErrorType.SKIPPED_BY_CATEGORY,
        committee_name=None,
        analyzed_at=None,
    )


def start_transition(record: AnalyzedContentRecord, kind: AttemptKind, now: datetime) -> Transition:
    return Transition(
        status=processing_status_for(kind),
        analysis_attempts=record.analysis_attempts,
        shortened_analysis_attempts=record.shortened_analysis_attempts,
        processing_started_at=to_iso(now),
        result=None,
        error_message=None,
        error_type=None,
        committee_name=None,
        analyzed_at=None,
    )


def next_state_on_failure(
    kind: AttemptKind,
    analysis_attempts: int,
    shortened_analysis_attempts: int,
    limits: RetryLimits,
) -> FailureStep:
    """Count one failed attempt of ``kind`` and pick where the record goes next.

    Counters hold attempts made, so reaching the limit escalates: regular
    failures fall through to the shortened tier, shortened failures to ``failed``.
    A counter never moves past its limit.
    """
    if kind == AttemptKind.REGULAR:
        regular = min(analysis_attempts + 1, limits.max_regular_attempts)
        if regular < limits.max_regular_attempts:
            status = AnalysisStatus.PENDING
        elif shortened_analysis_attempts < limits.max_shortened_attempts:
            status = AnalysisStatus.NEEDS_SHORTENED_RETRY
        else:
            status = AnalysisStatus.FAILED
        return FailureStep(status, regular, shortened_analysis_attempts)

    shortened = min(shortened_analysis_attempts + 1, limits.max_shortened_attempts)
    if shortened < limits.max_shortened_attempts:
        status = AnalysisStatus.NEEDS_SHORTENED_RETRY
    else:
        status = AnalysisStatus.FAILED
    return FailureStep(status, analysis_attempts, shortened)


def resolve_attempt(
    record: AnalyzedContentRecord,
    kind: AttemptKind,
    outcome: AttemptOutcome,
    limits: RetryLimits,
    now: datetime,
) -> Transition:
    """``record`` is the snapshot taken before the attempt claimed its lease."""
    regular, shortened = _count_attempt(record, kind, limits)

    if outcome.succeeded:
        if not isinstance(outcome.result, dict):
            message = "Inconsistent state: successful attempt with missing result payload."
            return Transition(
                status=AnalysisStatus.FAILED,
                analysis_attempts=regular,
                shortened_analysis_attempts=shortened,
                processing_started_at=None,
                result={"error": message, "type": ErrorType.INCONSISTENT_STATE.value},
                error_message=message,
                error_type=ErrorType.INCONSISTENT_STATE,
                committee_name=None,
                analyzed_at=None,
            )
        status = (
            AnalysisStatus.COMPLETED
            if kind == AttemptKind.REGULAR
            else AnalysisStatus.PARTIALLY_COMPLETED
        )
        return Transition(
            status=status,
            analysis_attempts=regular,
            shortened_analysis_attempts=shortened,
            processing_started_at=None,
            result=outcome.result,
            error_message=None,
            error_type=None,
            committee_name=normalize_committee_names(outcome.result.get("committee_name")),
            analyzed_at=to_iso(now),
        )

    step = next_state_on_failure(
        kind, record.analysis_attempts, record.shortened_analysis_attempts, limits
    )
    if outcome.error is None:
        result = record.result if record.status not in SUCCESS_STATUSES else None
        error_message = record.error_message
        error_type = record.error_type
    else:
        result = outcome.error.to_payload()
        error_message = outcome.error.message
        error_type = outcome.error.kind
    return Transition(
        status=step.status,
        analysis_attempts=step.analysis_attempts,
        shortened_analysis_attempts=step.shortened_analysis_attempts,
        processing_started_at=None,
        result=result,
        error_message=error_message,
        error_type=error_type,
        committee_name=None,
        analyzed_at=None,
    )


def rescue_transition(record: AnalyzedContentRecord, limits: RetryLimits) -> Transition:
    """Treat an abandoned lease as one failed attempt of the kind it was running."""
    kind = kind_for_leased_status(record.status)
    if kind is None:
        raise ValueError(f"record {record.id} is not leased (status={record.status.value})")
    step = next_state_on_failure(
        kind, record.analysis_attempts, record.shortened_analysis_attempts, limits
    )
    if step.status == AnalysisStatus.PENDING:
        marker = ErrorType.STUCK_REQUEUED_PENDING
        action = "Re-queued for regular analysis."
    elif step.status == AnalysisStatus.NEEDS_SHORTENED_RETRY:
        marker = ErrorType.STUCK_REQUEUED_SHORTENED
        action = "Re-queued for shortened analysis."
    else:
        marker = ErrorType.STUCK_MAX_ATTEMPTS_FAILED
        action = "Max attempts reached. Marked as failed."
    message = (
        f"Rescued from stuck '{record.status.value}' state (presumed timeout/crash). "
        f"Regular attempts: {step.analysis_attempts}/{limits.max_regular_attempts}, "
        f"shortened attempts: {step.shortened_analysis_attempts}/{limits.max_shortened_attempts}. "
        f"{action} (Original error before stuck: {record.error_message or 'None recorded'})"
    )
    return Transition(
        status=step.status,
        analysis_attempts=step.analysis_attempts,
        shortened_analysis_attempts=step.shortened_analysis_attempts,
        processing_started_at=None,
        result={"error": message, "type": marker.value},
        error_message=message,
        error_type=marker,
        committee_name=None,
        analyzed_at=None,
    )


def normalize_committee_names(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    names = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return names or None


def invariant_violations(transition: Transition, limits: RetryLimits) -> list[str]:
    problems: list[str] = []
    if transition.analysis_attempts > limits.max_regular_attempts:
        problems.append("analysis_attempts above limit")
    if transition.shortened_analysis_attempts > limits.max_shortened_attempts:
        problems.append("shortened_analysis_attempts above limit")
    leased = transition.status in LEASED_STATUSES
    if leased != (transition.processing_started_at is not None):
        problems.append("lease does not match status")
    if transition.committee_name is not None and transition.status not in SUCCESS_STATUSES:
        problems.append("committee_name set on unsuccessful record")
    return problems


def _count_attempt(
    record: AnalyzedContentRecord, kind: AttemptKind, limits: RetryLimits
) -> tuple[int, int]:
    if kind == AttemptKind.REGULAR:
        return (
            min(record.analysis_attempts + 1, limits.max_regular_attempts),
            record.shortened_analysis_attempts,
        )
    return (
        record.analysis_attempts,
        min(record.shortened_analysis_attempts + 1, limits.max_shortened_attempts),
    )
