import dataclasses
from datetime import datetime, timezone

from lygazsum import rescuer
from lygazsum.errors import ErrorType
from lygazsum.models import AnalysisStatus
from lygazsum.rescuer import JOB_NAME_RESCUER, rescue_stuck_analyses
from lygazsum.storage import get_content, get_job_state

NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
STALE_LEASE = "2024-03-01T07:40:00.000000+00:00"
FRESH_LEASE = "2024-03-01T07:55:00.000000+00:00"


def _with_analysis(config, **changes):
    return dataclasses.replace(config, analysis=dataclasses.replace(config.analysis, **changes))


def test_exhausted_stuck_record_is_failed(conn, config, logger, seed_content):
    config = _with_analysis(config, max_shortened_attempts=2)
    record = seed_content(
        status=AnalysisStatus.PROCESSING,
        analysis_attempts=3,
        shortened_analysis_attempts=2,
        processing_started_at=STALE_LEASE,
    )
    summary = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    assert summary.found == 1
    assert summary.rescued == 1
    assert summary.success is True

    stored = get_content(conn, record.id)
    assert stored.status == AnalysisStatus.FAILED
    assert stored.processing_started_at is None
    assert stored.analysis_attempts == 3
    assert stored.shortened_analysis_attempts == 2
    assert stored.error_type == ErrorType.STUCK_MAX_ATTEMPTS_FAILED


def test_stuck_records_are_requeued_by_kind(conn, config, logger, seed_content):
    regular = seed_content(
        "https://ly.example/gazette/a.txt",
        status=AnalysisStatus.PROCESSING,
        analysis_attempts=0,
        processing_started_at=STALE_LEASE,
    )
    shortened = seed_content(
        "https://ly.example/gazette/b.txt",
        status=AnalysisStatus.PROCESSING_SHORTENED,
        analysis_attempts=3,
        processing_started_at=STALE_LEASE,
        error_message="AI output truncated (MAX_TOKENS).",
        error_type="MAX_TOKENS",
    )
    fresh = seed_content(
        "https://ly.example/gazette/c.txt",
        status=AnalysisStatus.PROCESSING,
        processing_started_at=FRESH_LEASE,
    )
    sleeps = []
    summary = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=sleeps.append)
    assert summary.found == 2
    assert summary.rescued == 2
    assert sleeps == [config.rescue.inter_record_delay_ms / 1000]

    stored_regular = get_content(conn, regular.id)
    assert stored_regular.status == AnalysisStatus.PENDING
    assert stored_regular.analysis_attempts == 1
    assert stored_regular.error_type == ErrorType.STUCK_REQUEUED_PENDING
    assert stored_regular.error_message.startswith("Rescued from stuck 'processing' state")

    stored_shortened = get_content(conn, shortened.id)
    assert stored_shortened.status == AnalysisStatus.NEEDS_SHORTENED_RETRY
    assert stored_shortened.shortened_analysis_attempts == 1
    assert stored_shortened.error_type == ErrorType.STUCK_REQUEUED_SHORTENED
    assert "AI output truncated" in stored_shortened.error_message
    assert stored_shortened.result["type"] == "STUCK_REQUEUED_SHORTENED"

    stored_fresh = get_content(conn, fresh.id)
    assert stored_fresh.status == AnalysisStatus.PROCESSING
    assert stored_fresh.processing_started_at == FRESH_LEASE


def test_second_run_finds_nothing(conn, config, logger, seed_content):
    seed_content(status=AnalysisStatus.PROCESSING, processing_started_at=STALE_LEASE)
    first = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    second = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    assert first.rescued == 1
    assert second.found == 0
    assert second.message().startswith("No stuck records found.")


def test_lease_renewed_after_listing_is_left_alone(conn, config, logger, seed_content, monkeypatch):
    record = seed_content(status=AnalysisStatus.PROCESSING, processing_started_at=STALE_LEASE)
    original = rescuer.list_stuck_contents

    def _list_then_finish(conn, **kwargs):
        records = original(conn, **kwargs)
        conn.execute(
            "UPDATE analyzed_contents SET status = ?, processing_started_at = NULL WHERE id = ?",
            (AnalysisStatus.COMPLETED.value, record.id),
        )
        conn.commit()
        return records

    monkeypatch.setattr(rescuer, "list_stuck_contents", _list_then_finish)
    summary = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    assert summary.found == 1
    assert summary.rescued == 0
    assert summary.lease_changed == 1
    assert get_content(conn, record.id).status == AnalysisStatus.COMPLETED


def test_write_errors_are_counted(conn, config, logger, seed_content, monkeypatch):
    record = seed_content(status=AnalysisStatus.PROCESSING, processing_started_at=STALE_LEASE)

    def _broken_write(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(rescuer, "apply_rescue_transition", _broken_write)
    summary = rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    assert summary.failed_to_rescue == 1
    assert summary.success is False
    assert f"ID {record.id}" in summary.errors[0]
    payload = summary.to_payload()
    assert payload["details"]["failedToRescue"] == 1


def test_run_is_recorded_in_job_state(conn, config, logger):
    rescue_stuck_analyses(conn, config, logger, now=NOW, sleep=lambda _s: None)
    state = get_job_state(conn, JOB_NAME_RESCUER)
    assert state is not None
    assert state["notes"]["success"] is True
    assert state["notes"]["details"]["found"] == 0
