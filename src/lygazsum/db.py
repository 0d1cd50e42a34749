from __future__ import annotations

import os
import re
import sqlite3
from typing import Any

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

DB_URL_ENV = "LG_DB_URL"

# Several runs (scheduled analyzer, rescuer, CLI) may hold the file at once.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

_INSERT_OR_IGNORE = re.compile(r"\bINSERT\s+OR\s+IGNORE\b", re.IGNORECASE)
_QUOTED = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")


def get_db_url() -> str | None:
    url = os.environ.get(DB_URL_ENV, "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.split("://", 1)[0] in ("postgres", "postgresql")


class DBConn:
    """Connection wrapper so storage code can write SQLite-style SQL for both backends."""

    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        if self.backend == "postgres":
            sql = to_postgres_sql(sql)
        cursor = self._conn.cursor()
        cursor.execute(sql, params or ())
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str, url: str | None = None) -> DBConn:
    """Open the state store and bring its schema up to date.

    ``url`` (or ``LG_DB_URL``) selects PostgreSQL; otherwise ``path`` is a SQLite
    file whose directory is created on demand.
    """
    url = url or get_db_url()
    if is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        apply_migrations_pg(conn)
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path)
    for pragma in SQLITE_PRAGMAS:
        raw.execute(pragma)
    apply_migrations(raw)
    return DBConn(raw, "sqlite")


def to_postgres_sql(sql: str) -> str:
    """Rewrite the SQLite dialect used in storage for psycopg.

    ``INSERT OR IGNORE`` becomes ``INSERT ... ON CONFLICT DO NOTHING`` and ``?``
    placeholders outside quoted literals become ``%s``.
    """
    if _INSERT_OR_IGNORE.search(sql):
        sql = _INSERT_OR_IGNORE.sub("INSERT", sql, count=1)
        if "ON CONFLICT" not in sql.upper():
            sql = sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    parts = _QUOTED.split(sql)
    # split() with one capture group leaves literals at odd indexes
    return "".join(part if index % 2 else part.replace("?", "%s") for index, part in enumerate(parts))
