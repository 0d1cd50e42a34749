from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("lygazsum.migrations")
    conn.execute("BEGIN IMMEDIATE")
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
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS analyzed_contents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
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


def _migration_job_state(conn: sqlite3.Connection) -> None:
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


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_job_state", _migration_job_state),
    ]
