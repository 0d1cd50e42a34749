from __future__ import annotations

from typing import Any

from .config import get_state_db_path
from .db import connect_db
from .errors import ErrorType
from .models import AnalysisStatus, AnalyzedContentRecord, GazetteAgenda, Transition
from .utils import json_dumps, json_loads_or_none, utc_now_iso

_CONTENT_COLUMNS = """
    id, source_url, status, analysis_attempts, shortened_analysis_attempts,
    processing_started_at, error_message, error_type, result_json, committee_name_json,
    analyzed_at, created_at, updated_at
"""


def init_db(path: str | None = None):
    return connect_db(path or get_state_db_path())


def insert_content(conn: Any, source_url: str) -> int:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT OR IGNORE INTO analyzed_contents
            (source_url, status, analysis_attempts, shortened_analysis_attempts,
             created_at, updated_at)
        VALUES (?, ?, 0, 0, ?, ?)
        """,
        (source_url, AnalysisStatus.PENDING.value, now, now),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM analyzed_contents WHERE source_url = ?", (source_url,)
    ).fetchone()
    return int(row[0])


def get_content(conn: Any, content_id: int) -> AnalyzedContentRecord | None:
    cursor = conn.execute(
        f"SELECT {_CONTENT_COLUMNS} FROM analyzed_contents WHERE id = ?",
        (content_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_content(row)


def list_contents(
    conn: Any, status: AnalysisStatus | None = None, limit: int = 50
) -> list[AnalyzedContentRecord]:
    if status is None:
        cursor = conn.execute(
            f"""
            SELECT {_CONTENT_COLUMNS}
            FROM analyzed_contents
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_CONTENT_COLUMNS}
            FROM analyzed_contents
            WHERE status = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (status.value, limit),
        )
    return [_row_to_content(row) for row in cursor.fetchall()]


def count_contents_by_status(conn: Any) -> dict[str, int]:
    cursor = conn.execute(
        "SELECT status, COUNT(*) FROM analyzed_contents GROUP BY status ORDER BY status"
    )
    return {str(row[0]): int(row[1]) for row in cursor.fetchall()}


def list_analysis_candidates(
    conn: Any,
    *,
    max_regular_attempts: int,
    max_shortened_attempts: int,
    limit: int,
) -> list[AnalyzedContentRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_CONTENT_COLUMNS}
        FROM analyzed_contents
        WHERE (status = ? AND analysis_attempts < ?)
           OR (status = ? AND shortened_analysis_attempts < ?)
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (
            AnalysisStatus.PENDING.value,
            max_regular_attempts,
            AnalysisStatus.NEEDS_SHORTENED_RETRY.value,
            max_shortened_attempts,
            limit,
        ),
    )
    return [_row_to_content(row) for row in cursor.fetchall()]


def list_stuck_contents(
    conn: Any, *, started_before: str, limit: int
) -> list[AnalyzedContentRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_CONTENT_COLUMNS}
        FROM analyzed_contents
        WHERE status IN (?, ?)
          AND processing_started_at IS NOT NULL
          AND processing_started_at < ?
        ORDER BY processing_started_at ASC
        LIMIT ?
        """,
        (
            AnalysisStatus.PROCESSING.value,
            AnalysisStatus.PROCESSING_SHORTENED.value,
            started_before,
            limit,
        ),
    )
    return [_row_to_content(row) for row in cursor.fetchall()]


def claim_content(
    conn: Any,
    content_id: int,
    expected_status: AnalysisStatus,
    transition: Transition,
) -> bool:
    """Move a record into its processing state only if nobody else moved it first."""
    cursor = conn.execute(
        """
        UPDATE analyzed_contents
        SET status = ?, analysis_attempts = ?, shortened_analysis_attempts = ?,
            processing_started_at = ?, result_json = ?, error_message = ?,
            error_type = ?, committee_name_json = ?, analyzed_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (*_transition_params(transition), content_id, expected_status.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def apply_transition(conn: Any, content_id: int, lease: str, transition: Transition) -> bool:
    """Write the outcome of an attempt if the row still carries ``lease``."""
    cursor = conn.execute(
        """
        UPDATE analyzed_contents
        SET status = ?, analysis_attempts = ?, shortened_analysis_attempts = ?,
            processing_started_at = ?, result_json = ?, error_message = ?,
            error_type = ?, committee_name_json = ?, analyzed_at = ?, updated_at = ?
        WHERE id = ? AND processing_started_at = ?
        """,
        (*_transition_params(transition), content_id, lease),
    )
    conn.commit()
    return cursor.rowcount == 1


def apply_rescue_transition(
    conn: Any,
    content_id: int,
    expected_status: AnalysisStatus,
    expected_lease: str,
    transition: Transition,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE analyzed_contents
        SET status = ?, analysis_attempts = ?, shortened_analysis_attempts = ?,
            processing_started_at = ?, result_json = ?, error_message = ?,
            error_type = ?, committee_name_json = ?, analyzed_at = ?, updated_at = ?
        WHERE id = ? AND status = ? AND processing_started_at = ?
        """,
        (
            *_transition_params(transition),
            content_id,
            expected_status.value,
            expected_lease,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def upsert_agenda(conn: Any, agenda: GazetteAgenda) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO gazette_agendas
            (agenda_id, gazette_id, subject, category_code, source_url,
             meeting_dates_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(agenda_id) DO UPDATE SET
            gazette_id=excluded.gazette_id,
            subject=excluded.subject,
            category_code=excluded.category_code,
            source_url=excluded.source_url,
            meeting_dates_json=excluded.meeting_dates_json,
            updated_at=excluded.updated_at
        """,
        (
            agenda.agenda_id,
            agenda.gazette_id,
            agenda.subject,
            agenda.category_code,
            agenda.source_url,
            json_dumps(agenda.meeting_dates),
            now,
            now,
        ),
    )
    conn.commit()


def get_category_code_for_url(conn: Any, source_url: str) -> int | None:
    cursor = conn.execute(
        """
        SELECT category_code
        FROM gazette_agendas
        WHERE source_url = ?
        ORDER BY agenda_id ASC
        LIMIT 1
        """,
        (source_url,),
    )
    row = cursor.fetchone()
    if not row or row[0] is None:
        return None
    return int(row[0])


def record_job_state(conn: Any, job_name: str, run_at: str, notes: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO job_state (job_name, last_run_at, notes_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(job_name) DO UPDATE SET
            last_run_at=excluded.last_run_at,
            notes_json=excluded.notes_json,
            updated_at=excluded.updated_at
        """,
        (job_name, run_at, json_dumps(notes), now, now),
    )
    conn.commit()


def get_job_state(conn: Any, job_name: str) -> dict[str, object] | None:
    cursor = conn.execute(
        "SELECT job_name, last_run_at, notes_json FROM job_state WHERE job_name = ?",
        (job_name,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return {"job_name": row[0], "last_run_at": row[1], "notes": json_loads_or_none(row[2])}


def list_job_states(conn: Any) -> list[dict[str, object]]:
    cursor = conn.execute(
        "SELECT job_name, last_run_at, notes_json FROM job_state ORDER BY job_name"
    )
    return [
        {"job_name": row[0], "last_run_at": row[1], "notes": json_loads_or_none(row[2])}
        for row in cursor.fetchall()
    ]


def _transition_params(transition: Transition) -> tuple:
    return (
        transition.status.value,
        transition.analysis_attempts,
        transition.shortened_analysis_attempts,
        transition.processing_started_at,
        json_dumps(transition.result) if transition.result is not None else None,
        transition.error_message,
        transition.error_type.value if transition.error_type else None,
        json_dumps(transition.committee_name) if transition.committee_name is not None else None,
        transition.analyzed_at,
        utc_now_iso(),
    )


def _row_to_content(row: tuple) -> AnalyzedContentRecord:
    (
        content_id,
        source_url,
        status,
        analysis_attempts,
        shortened_analysis_attempts,
        processing_started_at,
        error_message,
        error_type,
        result_json,
        committee_name_json,
        analyzed_at,
        created_at,
        updated_at,
    ) = row
    result = json_loads_or_none(result_json)
    committee = json_loads_or_none(committee_name_json)
    return AnalyzedContentRecord(
        id=int(content_id),
        source_url=source_url,
        status=AnalysisStatus(status),
        analysis_attempts=int(analysis_attempts or 0),
        shortened_analysis_attempts=int(shortened_analysis_attempts or 0),
        processing_started_at=processing_started_at,
        error_message=error_message,
        error_type=ErrorType.parse(error_type),
        result=result if isinstance(result, dict) else None,
        committee_name=[str(name) for name in committee] if isinstance(committee, list) else None,
        analyzed_at=analyzed_at,
        created_at=created_at,
        updated_at=updated_at,
    )
