"""
Read-only DB-API connections for the telemetry mirror.

The mirror lives either in a SQLite file written by the collector or in
PostgreSQL. Queries are written once with '?' placeholders; on PostgreSQL
they are rewritten to psycopg2's '%s' style. Nothing here writes: SQLite is
opened with mode=ro and PostgreSQL sessions are marked read-only.

Usage:
    from linkdiag.db import connect

    with connect(db_path="/var/lib/linkdiag/telemetry.db") as conn:
        rows = conn.query("SELECT slot, port FROM onu_telemetry WHERE serial = ?", ("FRKW00000001",))
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Sequence

import psycopg2
import psycopg2.extras

from linkdiag.errors import ConfigurationError

logger = logging.getLogger(__name__)

POSTGRES_SCHEMES = ("postgresql://", "postgres://")


def is_postgres(db_url: Optional[str]) -> bool:
    return bool(db_url) and db_url.startswith(POSTGRES_SCHEMES)


def to_pyformat(sql: str) -> str:
    """Rewrite '?' placeholders to '%s' outside quoted literals; escape literal '%'."""
    out = []
    quote = None
    for ch in sql:
        if ch == "%":
            out.append("%%")
            continue
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "?":
            out.append("%s")
            continue
        out.append(ch)
    return "".join(out)


class TelemetryConnection:
    """One read-only connection; rows come back as plain dicts."""

    def __init__(self, conn, postgres: bool):
        self._conn = conn
        self.postgres = postgres

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        if self.postgres:
            with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(to_pyformat(sql), tuple(params))
                return [dict(row) for row in cursor.fetchall()]
        cursor = self._conn.execute(sql, tuple(params))
        try:
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self):
        self._conn.close()


def open_connection(db_url: Optional[str] = None, db_path: Optional[str] = None) -> TelemetryConnection:
    """Open the telemetry database read-only.

    db_url wins when it is a PostgreSQL URL; otherwise db_path names a
    SQLite file that must already exist.
    """
    logger.debug(f"opening telemetry database read-only ({'postgresql' if is_postgres(db_url) else db_path})")
    if is_postgres(db_url):
        conn = psycopg2.connect(db_url)
        conn.set_session(readonly=True, autocommit=True)
        return TelemetryConnection(conn, postgres=True)

    if not db_path:
        raise ConfigurationError("no telemetry database: set db_url (PostgreSQL) or db_path (SQLite)")
    uri = f"{Path(db_path).resolve().as_uri()}?mode=ro"
    conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return TelemetryConnection(conn, postgres=False)


@contextmanager
def connect(db_url: Optional[str] = None, db_path: Optional[str] = None):
    """Yield a read-only connection and always close it."""
    conn = open_connection(db_url=db_url, db_path=db_path)
    try:
        yield conn
    finally:
        conn.close()
