from __future__ import annotations

import logging

import pytest

from lygazsum.config import load_config
from lygazsum.models import AnalysisStatus, GazetteAgenda
from lygazsum.storage import get_content, init_db, insert_content, upsert_agenda


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("LG_DATA_DIR", str(data_dir))
    monkeypatch.delenv("LG_DB_URL", raising=False)
    monkeypatch.delenv("LG_CONFIG", raising=False)
    return data_dir


@pytest.fixture
def conn(data_dir):
    conn = init_db(str(data_dir / "state.sqlite3"))
    yield conn
    conn.close()


@pytest.fixture
def config(data_dir):
    return load_config()


@pytest.fixture
def logger():
    return logging.getLogger("lygazsum.test")


@pytest.fixture
def seed_content(conn):
    def _seed(
        url: str = "https://ly.example/gazette/1130001.txt",
        *,
        status: AnalysisStatus = AnalysisStatus.PENDING,
        analysis_attempts: int = 0,
        shortened_analysis_attempts: int = 0,
        processing_started_at: str | None = None,
        error_message: str | None = None,
        error_type: str | None = None,
        category_code: int | None = 3,
    ):
        content_id = insert_content(conn, url)
        conn.execute(
            """
            UPDATE analyzed_contents
            SET status = ?, analysis_attempts = ?, shortened_analysis_attempts = ?,
                processing_started_at = ?, error_message = ?, error_type = ?
            WHERE id = ?
            """,
            (
                status.value,
                analysis_attempts,
                shortened_analysis_attempts,
                processing_started_at,
                error_message,
                error_type,
                content_id,
            ),
        )
        conn.commit()
        if category_code is not None:
            upsert_agenda(
                conn,
                GazetteAgenda(
                    agenda_id=f"agenda-{content_id}",
                    gazette_id="1130001",
                    subject="財政委員會審查所得稅法修正草案",
                    category_code=category_code,
                    source_url=url,
                    meeting_dates=["2024-03-01"],
                ),
            )
        return get_content(conn, content_id)

    return _seed
