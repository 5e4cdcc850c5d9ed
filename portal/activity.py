"""Portal activity log and the usage summary shown on the maintenance page."""

from __future__ import annotations

import datetime as dt
from typing import Dict, Optional

from portal.server import ACTIVITY_TABLE, clamp_text, iso, normalize_email, utcnow

DEFAULT_EVENT_TYPE = "page_view"
TOP_PAGES_LIMIT = 8
RECENT_ACTIVITY_LIMIT = 30


def mask_ip(raw_ip: object) -> str:
    """Keep only the network part of a client address."""
    value = str(raw_ip or "").strip()
    if not value:
        return ""
    if "." in value:
        parts = value.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.x.x"
    if ":" in value:
        parts = [part for part in value.split(":") if part]
        if len(parts) > 2:
            return ":".join(parts[:2]) + "::"
    return value[:24]


def record_activity(
    conn,
    email: Optional[str],
    event_type: str = DEFAULT_EVENT_TYPE,
    path: str = "",
    user_agent: str = "",
    ip: str = "",
) -> None:
    if conn is None:
        return
    conn.execute(
        f"""
        INSERT INTO {ACTIVITY_TABLE} (email, event_type, path, user_agent, ip_mask, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            normalize_email(clamp_text(email, 320)) or None,
            clamp_text(event_type, 40) or DEFAULT_EVENT_TYPE,
            clamp_text(path, 240) or None,
            clamp_text(user_agent, 500) or None,
            mask_ip(ip) or None,
            iso(),
        ),
    )
    conn.commit()


def empty_metrics() -> Dict[str, object]:
    return {
        "pageViews24h": 0,
        "pageViews7d": 0,
        "distinctUsers7d": 0,
        "activeUsers15m": 0,
        "topPages7d": [],
        "recentActivity": [],
    }


def _count(conn, sql: str, since: str) -> int:
    row = conn.execute(sql, (since,)).fetchone()
    return int(row["total"] or 0) if row else 0


def read_activity_metrics(conn) -> Dict[str, object]:
    if conn is None:
        return empty_metrics()

    now = utcnow()
    since_24h = iso(now - dt.timedelta(hours=24))
    since_7d = iso(now - dt.timedelta(days=7))
    since_15m = iso(now - dt.timedelta(minutes=15))

    views_sql = f"SELECT COUNT(*) AS total FROM {ACTIVITY_TABLE} WHERE event_type = 'page_view' AND created_at >= ?"
    users_sql = (
        f"SELECT COUNT(DISTINCT email) AS total FROM {ACTIVITY_TABLE} WHERE email IS NOT NULL AND created_at >= ?"
    )

    top_pages = conn.execute(
        f"""
        SELECT path, COUNT(*) AS hits
        FROM {ACTIVITY_TABLE}
        WHERE event_type = 'page_view' AND created_at >= ? AND path IS NOT NULL
        GROUP BY path
        ORDER BY hits DESC, path
        LIMIT {TOP_PAGES_LIMIT}
        """,
        (since_7d,),
    ).fetchall()
    recent = conn.execute(
        f"""
        SELECT email, event_type, path, created_at
        FROM {ACTIVITY_TABLE}
        ORDER BY created_at DESC, id DESC
        LIMIT {RECENT_ACTIVITY_LIMIT}
        """
    ).fetchall()

    return {
        "pageViews24h": _count(conn, views_sql, since_24h),
        "pageViews7d": _count(conn, views_sql, since_7d),
        "distinctUsers7d": _count(conn, users_sql, since_7d),
        "activeUsers15m": _count(conn, users_sql, since_15m),
        "topPages7d": [{"path": str(row["path"] or ""), "hits": int(row["hits"] or 0)} for row in top_pages],
        "recentActivity": [
            {
                "email": row["email"] or None,
                "eventType": str(row["event_type"] or ""),
                "path": row["path"] or None,
                "createdAt": row["created_at"] or None,
            }
            for row in recent
        ],
    }
