from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("lygazsum.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        if "pg_bootstrap_001" not in applied:
            _bootstrap_schema(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s)",
                ("pg_bootstrap_001", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_bootstrap_001")
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS analyzed_contents (
            id BIGSERIAL PRIMARY KEY,
            source_url TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending',
            analysis_attempts INTEGER NOT NULL DEFAULT 0,
            shortened_analysis_attempts INTEGER NOT NULL DEFAULT 0,
            processing_started_at TEXT NULL,
            error_message TEXT NULL,
            error_type TEXT NULL,
            result_json TEXT NULL,
            committee_name_json TEXT NULL,
            analyzed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_analyzed_contents_status_created
        ON analyzed_contents(status, created_at)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_analyzed_contents_lease
        ON analyzed_contents(status, processing_started_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS gazette_agendas (
            agenda_id TEXT PRIMARY KEY,
            gazette_id TEXT NOT NULL,
            subject TEXT NULL,
            category_code INTEGER NULL,
            source_url TEXT NULL,
            meeting_dates_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_gazette_agendas_source_url
        ON gazette_agendas(source_url)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_state (
            job_name TEXT PRIMARY KEY,
            last_run_at TEXT NULL,
            notes_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
