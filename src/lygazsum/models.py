from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ErrorType


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSING_SHORTENED = "processing_shortened"
    NEEDS_SHORTENED_RETRY = "needs_shortened_retry"
    PARTIALLY_COMPLETED = "partially_completed"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


LEASED_STATUSES = frozenset({AnalysisStatus.PROCESSING, AnalysisStatus.PROCESSING_SHORTENED})
SUCCESS_STATUSES = frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.PARTIALLY_COMPLETED})


class AttemptKind(str, Enum):
    REGULAR = "regular"
    SHORTENED = "shortened"


@dataclass(frozen=True)
class AnalyzedContentRecord:
    id: int
    source_url: str
    status: AnalysisStatus
    analysis_attempts: int
    shortened_analysis_attempts: int
    processing_started_at: str | None
    error_message: str | None
    error_type: ErrorType | None
    result: dict[str, Any] | None
    committee_name: list[str] | None
    analyzed_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ErrorDetail:
    message: str
    kind: ErrorType
    raw_output: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "type": self.kind.value}
        if self.raw_output is not None:
            payload["rawOutput"] = self.raw_output
        return payload


@dataclass(frozen=True)
class AnalysisSuccess:
    result: dict[str, Any] | None


@dataclass(frozen=True)
class AnalysisFailure:
    error: ErrorDetail


AnalysisOutcome = AnalysisSuccess | AnalysisFailure


@dataclass(frozen=True)
class AttemptOutcome:
    """What one attempt produced. A failure with ``error=None`` carried no new detail."""

    succeeded: bool
    result: dict[str, Any] | None = None
    error: ErrorDetail | None = None

    @classmethod
    def success(cls, result: dict[str, Any] | None) -> "AttemptOutcome":
        return cls(succeeded=True, result=result)

    @classmethod
    def failure(cls, error: ErrorDetail | None) -> "AttemptOutcome":
        return cls(succeeded=False, error=error)


@dataclass(frozen=True)
class Transition:
    status: AnalysisStatus
    analysis_attempts: int
    shortened_analysis_attempts: int
    processing_started_at: str | None
    result: dict[str, Any] | None
    error_message: str | None
    error_type: ErrorType | None
    committee_name: list[str] | None
    analyzed_at: str | None


@dataclass(frozen=True)
class GazetteAgenda:
    agenda_id: str
    gazette_id: str
    subject: str | None
    category_code: int | None
    source_url: str | None
    meeting_dates: list[str]


@dataclass(frozen=True)
class ProcessResult:
    record_id: int
    final_status: AnalysisStatus | None
    analysis_performed: bool
    skipped_by_category: bool
    error_message: str | None = None
    system_error: str | None = None
