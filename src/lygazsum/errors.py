from __future__ import annotations

from enum import Enum


class ErrorType(str, Enum):
    FETCH_ERROR = "FETCH_ERROR"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    SCHEMA_ERROR = "SCHEMA_ERROR"
    SAFETY = "SAFETY"
    MAX_TOKENS = "MAX_TOKENS"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    PIPELINE_ERROR = "PIPELINE_ERROR"
    SKIPPED_BY_CATEGORY = "SKIPPED_BY_CATEGORY"
    INCONSISTENT_STATE = "INCONSISTENT_STATE"
    STUCK_REQUEUED_PENDING = "STUCK_REQUEUED_PENDING"
    STUCK_REQUEUED_SHORTENED = "STUCK_REQUEUED_SHORTENED"
    STUCK_MAX_ATTEMPTS_FAILED = "STUCK_MAX_ATTEMPTS_FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> "ErrorType | None":
        """Map a stored error_type back to the enum; unrecognized values become UNKNOWN."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


TRANSIENT_ERROR_TYPES = frozenset(
    {
        ErrorType.FETCH_ERROR,
        ErrorType.TIMEOUT,
        ErrorType.NETWORK_ERROR,
        ErrorType.QUOTA_EXCEEDED,
        ErrorType.HTTP_ERROR,
    }
)

RESCUE_ERROR_TYPES = frozenset(
    {
        ErrorType.STUCK_REQUEUED_PENDING,
        ErrorType.STUCK_REQUEUED_SHORTENED,
        ErrorType.STUCK_MAX_ATTEMPTS_FAILED,
    }
)


def is_transient(kind: ErrorType | None) -> bool:
    return kind in TRANSIENT_ERROR_TYPES


def is_rescue_marker(kind: ErrorType | None) -> bool:
    return kind in RESCUE_ERROR_TYPES


class FetchError(Exception):
    error_type = ErrorType.FETCH_ERROR

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class FetchTimeoutError(FetchError):
    error_type = ErrorType.TIMEOUT


class EmptyContentError(FetchError):
    error_type = ErrorType.EMPTY_RESPONSE


class AnalyzerConfigError(ValueError):
    pass
