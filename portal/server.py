#!/usr/bin/env python3
"""Council Portal core services.

Deployment configuration, the keyed JSON document store (SQLite by default,
PostgreSQL when a database URL is configured) and lazy schema bootstrap.
"""

from __future__ import annotations

import datetime as dt
import json
import os
import re
import sqlite3
import threading
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

APP_NAME = "Council Portal"
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.environ.get("PORTAL_DB_PATH", str(DATA_DIR / "portal.db")))
DATABASE_URL = os.environ.get("PORTAL_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
SECRET_KEY = os.environ.get("PORTAL_SECRET_KEY", "change-this-secret-in-production")
# Prefer generic container vars for App Platform compatibility.
# PORTAL_* vars remain supported and take precedence where set.
HOST = os.environ.get("PORTAL_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("PORTAL_PORT", os.environ.get("PORT", "8080")))
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("PORTAL_DB_BUSY_TIMEOUT_MS", "6000")))
LOG_LEVEL = os.environ.get("PORTAL_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Break-glass identity: always resolves to every role so the portal can never
# be locked out by an empty or broken roster/override document. Whoever can
# present this address through the perimeter headers gets full access.
FALLBACK_PRESIDENT_EMAIL = (
    os.environ.get("PORTAL_FALLBACK_PRESIDENT_EMAIL", "president@nphchudson.org").strip().lower()
)
IDENTITY_LOOKUP_TIMEOUT = max(1.0, float(os.environ.get("PORTAL_IDENTITY_LOOKUP_TIMEOUT", "5")))
# Host names the app answers to; the identity lookup is sent back to the request host.
TRUSTED_HOSTS = [host.strip() for host in os.environ.get("PORTAL_TRUSTED_HOSTS", "").split(",") if host.strip()]

CONTENT_TABLE = "portal_content_state"
ACTIVITY_TABLE = "portal_activity_log"
LEADERSHIP_SECTION_KEY = "chapter_leadership"
ACCESS_OVERRIDES_SECTION_KEY = "access_overrides"
MEMBER_DIRECTORY_SECTION_KEY = "member_directory"

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def normalize_email(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def clamp_text(value: object, limit: int = 200) -> str:
    if value is None:
        return ""
    return str(value).strip()[:limit]


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            name = self._order[key]
            return super().__getitem__(name)
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None):
        self._cursor = cursor
        self._order = order or []

    def _wrap(self, row: Any):
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            mapped = {self._order[idx]: row[idx] for idx in range(min(len(self._order), len(row)))}
            return CompatRow(mapped, self._order)
        return row

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None:
            return None
        return self._wrap(row)

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _replace_qmark_params(sql: str) -> str:
    out: List[str] = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    # Basic SQLite DDL conversion for init_db() bootstrap.
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls still work."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        cur = self._conn.cursor()
        cur.execute(_adapt_sql_for_postgres(sql), params)
        order = [d.name for d in (cur.description or [])]
        return CompatCursor(cur, order=order)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_content_table(conn) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {CONTENT_TABLE} (
            section_key TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            updated_by TEXT
        )
        """
    )


def ensure_activity_table(conn) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {ACTIVITY_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT,
            event_type TEXT NOT NULL,
            path TEXT,
            user_agent TEXT,
            ip_mask TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_portal_activity_created_at ON {ACTIVITY_TABLE}(created_at)")
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_portal_activity_email ON {ACTIVITY_TABLE}(email)")


def ensure_bootstrap() -> None:
    """Initialize the document store once per process.

    WSGI workers may process concurrent requests; the lock prevents duplicate
    init work.
    """
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            traceback.print_exc()
            raise


def init_db() -> None:
    """Create the document and activity tables. Safe to call repeatedly."""
    conn = db_connect()
    try:
        ensure_content_table(conn)
        ensure_activity_table(conn)
        conn.commit()
    finally:
        conn.close()


def read_section(conn, section_key: str) -> Dict[str, object]:
    """Return one stored document as ``{found, data, updated_at, updated_by}``.

    A row whose payload is not valid JSON is reported as found with ``data``
    set to None; callers decide what an unusable document means for them.
    """
    row = conn.execute(
        f"""
        SELECT payload_json, updated_at, updated_by
        FROM {CONTENT_TABLE}
        WHERE section_key = ?
        """,
        (section_key,),
    ).fetchone()

    if not row:
        return {"found": False, "data": None, "updated_at": None, "updated_by": None}

    try:
        parsed = json.loads(row["payload_json"] or "null")
    except ValueError:
        parsed = None

    return {
        "found": True,
        "data": parsed,
        "updated_at": row["updated_at"] or None,
        "updated_by": row["updated_by"] or None,
    }


def read_sections(conn, section_keys: List[str]) -> Dict[str, object]:
    """Return parsed payloads for several documents; missing or broken ones map to None."""
    out: Dict[str, object] = {key: None for key in section_keys}
    if not section_keys:
        return out
    placeholders = ", ".join("?" for _ in section_keys)
    rows = conn.execute(
        f"SELECT section_key, payload_json FROM {CONTENT_TABLE} WHERE section_key IN ({placeholders})",
        tuple(section_keys),
    ).fetchall()
    for row in rows:
        try:
            out[row["section_key"]] = json.loads(row["payload_json"] or "null")
        except ValueError:
            out[row["section_key"]] = None
    return out


def write_section(conn, section_key: str, payload: object, email: Optional[str]) -> Dict[str, object]:
    """Replace one document with a single upsert and commit it."""
    now = iso()
    conn.execute(
        f"""
        INSERT INTO {CONTENT_TABLE} (section_key, payload_json, updated_at, updated_by)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(section_key) DO UPDATE SET
            payload_json = excluded.payload_json,
            updated_at = excluded.updated_at,
            updated_by = excluded.updated_by
        """,
        (section_key, json.dumps(payload), now, email or None),
    )
    conn.commit()
    return {"found": True, "data": payload, "updated_at": now, "updated_by": email or None}


def list_sections(conn) -> List[Tuple[str, str, Optional[str]]]:
    rows = conn.execute(
        f"SELECT section_key, updated_at, updated_by FROM {CONTENT_TABLE} ORDER BY section_key"
    ).fetchall()
    return [(row["section_key"], row["updated_at"], row["updated_by"]) for row in rows]


def parse_email_list(raw_value: Optional[str]) -> List[str]:
    """Split a comma-separated allowlist into normalized, de-duplicated emails."""
    if not raw_value:
        return []
    seen: List[str] = []
    for part in str(raw_value).split(","):
        email = normalize_email(part)
        if email and email not in seen:
            seen.append(email)
    return seen
