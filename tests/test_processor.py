import logging

import pytest

from lygazsum import processor
from lygazsum.errors import ErrorType, FetchError
from lygazsum.models import AnalysisFailure, AnalysisStatus, AnalysisSuccess, ErrorDetail
from lygazsum.pipelines.content_fetch import PreparedContent
from lygazsum.processor import process_single_content
from lygazsum.storage import get_content

RESULT = {
    "summary_title": "所得稅法修正草案審查",
    "overall_summary_sentence": "委員會審查所得稅法修正草案。",
    "committee_name": ["財政委員會"],
    "agenda_items": [],
}


class _FakeAnalyzer:
    def __init__(self, outcome):
        self.outcome = outcome
        self.prompts = []

    def analyze(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def _fetcher(calls=None, text="主席：現在開會。"):
    def _fake_fetch(url, **kwargs):
        if calls is not None:
            calls.append((url, kwargs))
        return PreparedContent(text=text, truncated=False)

    return _fake_fetch


def _failing_fetcher(url, **kwargs):
    raise FetchError("Failed fetch after 2 attempts. Last status: 503", url=url, status=503)


def test_fetch_failure_returns_record_to_pending(conn, config, logger, seed_content):
    record = seed_content()
    analyzer = _FakeAnalyzer(AnalysisSuccess(RESULT))
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_failing_fetcher
    )
    assert result.final_status == AnalysisStatus.PENDING
    assert result.analysis_performed is False
    assert analyzer.prompts == []

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.PENDING
    assert stored.analysis_attempts == 1
    assert stored.processing_started_at is None
    assert stored.error_type == ErrorType.FETCH_ERROR
    assert stored.error_message.startswith(f"Content fetch error for ID {record.id}")
    assert stored.result["type"] == "FETCH_ERROR"


def test_regular_success_completes(conn, config, logger, seed_content):
    record = seed_content()
    calls = []
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_fetcher(calls),
    )
    assert result.final_status == AnalysisStatus.COMPLETED
    assert result.analysis_performed is True
    assert result.error_message is None

    _, kwargs = calls[0]
    assert kwargs["max_length"] == config.analysis.max_content_length_chars
    assert kwargs["timeout_seconds"] == config.analysis.content_fetch_timeout_seconds
    assert kwargs["request_timeout_seconds"] == config.http.timeout_seconds

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.COMPLETED
    assert stored.analysis_attempts == 1
    assert stored.result == RESULT
    assert stored.committee_name == ["財政委員會"]
    assert stored.analyzed_at is not None
    assert stored.error_type is None


def test_excluded_category_is_skipped_without_analysis(conn, config, logger, seed_content):
    record = seed_content(category_code=99)
    analyzer = _FakeAnalyzer(AnalysisSuccess(RESULT))
    calls = []
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_fetcher(calls)
    )
    assert result.final_status == AnalysisStatus.SKIPPED
    assert result.skipped_by_category is True
    assert result.analysis_performed is False
    assert calls == []
    assert analyzer.prompts == []

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.SKIPPED
    assert stored.analysis_attempts == 0
    assert stored.error_type == ErrorType.SKIPPED_BY_CATEGORY
    assert stored.result["type"] == "SKIPPED_BY_CATEGORY"
    assert "99" in stored.result["error"]


def test_content_without_agenda_is_skipped(conn, config, logger, seed_content):
    record = seed_content(category_code=None)
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_fetcher(),
    )
    assert result.final_status == AnalysisStatus.SKIPPED
    assert get_content(conn, record.id).status == AnalysisStatus.SKIPPED


def test_shortened_failure_stays_in_shortened_retry(conn, config, logger, seed_content):
    record = seed_content(
        status=AnalysisStatus.NEEDS_SHORTENED_RETRY,
        analysis_attempts=3,
        error_message="AI output truncated (MAX_TOKENS).",
        error_type="MAX_TOKENS",
    )
    analyzer = _FakeAnalyzer(
        AnalysisFailure(ErrorDetail("AI output truncated (MAX_TOKENS).", ErrorType.MAX_TOKENS))
    )
    calls = []
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_fetcher(calls)
    )
    assert result.final_status == AnalysisStatus.NEEDS_SHORTENED_RETRY
    assert result.analysis_performed is True

    _, kwargs = calls[0]
    assert kwargs["max_length"] == config.analysis.shortened_content_length_chars
    assert "MAX_TOKENS" in analyzer.prompts[0]

    stored = get_content(conn, record.id)
    assert stored.analysis_attempts == 3
    assert stored.shortened_analysis_attempts == 1
    assert stored.error_type == ErrorType.MAX_TOKENS


def test_shortened_success_is_partially_completed(conn, config, logger, seed_content):
    record = seed_content(status=AnalysisStatus.NEEDS_SHORTENED_RETRY, analysis_attempts=3)
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_fetcher(),
    )
    assert result.final_status == AnalysisStatus.PARTIALLY_COMPLETED
    stored = get_content(conn, record.id)
    assert stored.shortened_analysis_attempts == 1
    assert stored.committee_name == ["財政委員會"]


def test_unexpected_error_is_recorded_as_pipeline_error(conn, config, logger, seed_content):
    record = seed_content()
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(RuntimeError("prompt builder exploded")),
        logger=logger,
        fetcher=_fetcher(),
    )
    assert result.final_status == AnalysisStatus.PENDING
    stored = get_content(conn, record.id)
    assert stored.error_type == ErrorType.PIPELINE_ERROR
    assert "prompt builder exploded" in stored.error_message
    assert stored.processing_started_at is None


def test_interrupt_still_releases_lease(conn, config, logger, seed_content):
    record = seed_content(
        analysis_attempts=1,
        error_message="Gemini API quota/rate limit issue",
        error_type="QUOTA_EXCEEDED",
    )
    with pytest.raises(KeyboardInterrupt):
        process_single_content(
            conn,
            record,
            config=config,
            analyzer=_FakeAnalyzer(KeyboardInterrupt()),
            logger=logger,
            fetcher=_fetcher(),
        )
    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.PENDING
    assert stored.analysis_attempts == 2
    assert stored.processing_started_at is None
    assert stored.error_type == ErrorType.QUOTA_EXCEEDED


def test_terminal_write_failure_is_logged(conn, config, logger, seed_content, monkeypatch, caplog):
    record = seed_content()

    def _broken_write(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(processor, "apply_transition", _broken_write)
    caplog.set_level(logging.INFO)
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_fetcher(),
    )
    assert result.final_status == AnalysisStatus.PROCESSING
    assert result.system_error.startswith(f"Terminal write failed for ID {record.id}")
    assert result.error_message == result.system_error
    assert "event=content_write_failed" in caplog.text
    assert get_content(conn, record.id).status == AnalysisStatus.PROCESSING


def test_lost_claim_does_not_analyze(conn, config, logger, seed_content):
    record = seed_content()
    conn.execute(
        "UPDATE analyzed_contents SET status = ?, processing_started_at = ? WHERE id = ?",
        (AnalysisStatus.PROCESSING.value, "2024-03-01T08:00:00.000000+00:00", record.id),
    )
    conn.commit()
    analyzer = _FakeAnalyzer(AnalysisSuccess(RESULT))
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_fetcher()
    )
    assert result.final_status is None
    assert result.analysis_performed is False
    assert analyzer.prompts == []
    assert get_content(conn, record.id).status == AnalysisStatus.PROCESSING


def test_exhausted_record_is_not_eligible(conn, config, logger, seed_content):
    record = seed_content(analysis_attempts=config.analysis.max_regular_attempts)
    analyzer = _FakeAnalyzer(AnalysisSuccess(RESULT))
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_fetcher()
    )
    assert result.final_status == AnalysisStatus.PENDING
    assert result.analysis_performed is False
    assert result.error_message == "record is not eligible for analysis"
    assert analyzer.prompts == []


def test_last_regular_failure_degrades_to_shortened_retry(conn, config, logger, seed_content):
    record = seed_content(analysis_attempts=2)
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_failing_fetcher,
    )
    assert result.final_status == AnalysisStatus.NEEDS_SHORTENED_RETRY
    stored = get_content(conn, record.id)
    assert stored.analysis_attempts == 3
    assert stored.shortened_analysis_attempts == 0


def test_regular_analysis_failure_returns_to_pending(conn, config, logger, seed_content):
    record = seed_content()
    detail = ErrorDetail(
        "Failed to parse API response as JSON: Expecting value",
        ErrorType.JSON_PARSE_ERROR,
        raw_output="not json at all",
    )
    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisFailure(detail)),
        logger=logger,
        fetcher=_fetcher(),
    )
    assert result.final_status == AnalysisStatus.PENDING
    assert result.analysis_performed is True
    assert result.error_message == detail.message

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.PENDING
    assert stored.analysis_attempts == 1
    assert stored.shortened_analysis_attempts == 0
    assert stored.processing_started_at is None
    assert stored.error_type == ErrorType.JSON_PARSE_ERROR
    assert stored.result["type"] == "JSON_PARSE_ERROR"
    assert stored.result["rawOutput"] == "not json at all"


def test_shortened_fetch_failure_counts_shortened_attempt(conn, config, logger, seed_content):
    record = seed_content(
        status=AnalysisStatus.NEEDS_SHORTENED_RETRY,
        analysis_attempts=3,
        error_message="AI output truncated (MAX_TOKENS).",
        error_type="MAX_TOKENS",
    )
    analyzer = _FakeAnalyzer(AnalysisSuccess(RESULT))
    result = process_single_content(
        conn, record, config=config, analyzer=analyzer, logger=logger, fetcher=_failing_fetcher
    )
    assert result.final_status == AnalysisStatus.NEEDS_SHORTENED_RETRY
    assert result.analysis_performed is False
    assert analyzer.prompts == []

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.NEEDS_SHORTENED_RETRY
    assert stored.analysis_attempts == 3
    assert stored.shortened_analysis_attempts == 1
    assert stored.processing_started_at is None
    assert stored.error_type == ErrorType.FETCH_ERROR


def test_late_result_does_not_overwrite_a_new_lease(conn, config, logger, seed_content):
    record = seed_content()
    new_lease = "2099-01-01T00:00:00.000000+00:00"

    def _fetch_while_rescued(url, **kwargs):
        conn.execute(
            "UPDATE analyzed_contents SET processing_started_at = ? WHERE id = ?",
            (new_lease, record.id),
        )
        conn.commit()
        return PreparedContent(text="主席：現在開會。", truncated=False)

    result = process_single_content(
        conn,
        record,
        config=config,
        analyzer=_FakeAnalyzer(AnalysisSuccess(RESULT)),
        logger=logger,
        fetcher=_fetch_while_rescued,
    )
    assert result.final_status is None
    assert result.analysis_performed is True
    assert result.system_error is None

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.PROCESSING
    assert stored.processing_started_at == new_lease
    assert stored.result is None
