#!/usr/bin/env python3
"""Council Portal - Flask Application

Session, access-override, leadership-roster and activity-tracking endpoints
over the shared document store.
"""

from __future__ import annotations

import json
import logging
import os
from typing import List, Optional

import click
from flask import Flask, Response, g, jsonify, request

from portal.access_overrides import (
    InvalidOverridePayload,
    read_access_overrides,
    read_known_users,
    write_access_overrides,
)
from portal.activity import read_activity_metrics, record_activity
from portal.auth import get_session_state, json_error, require_president, require_site_editor
from portal.roles import resolve_session
from portal.roster import read_roster, write_roster
from portal.server import (
    APP_NAME,
    HOST,
    LOG_LEVEL,
    PORT,
    SECRET_KEY,
    TRUSTED_HOSTS,
    db_connect,
    ensure_bootstrap,
    init_db as server_init_db,
)

log = logging.getLogger(__name__)

flask_app = Flask(__name__, static_folder=None, template_folder=None)
flask_app.config["SECRET_KEY"] = SECRET_KEY
# Requests for any other Host are rejected with 400 before routing.
flask_app.config["TRUSTED_HOSTS"] = TRUSTED_HOSTS or None

# Paths that answer without the store; the session endpoint degrades to static configuration.
STORE_OPTIONAL_PATHS = {"/healthz", "/api/admin/session"}

SECURITY_HEADERS = (
    ("X-Frame-Options", "DENY"),
    ("X-Content-Type-Options", "nosniff"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
    ("Cache-Control", "no-store"),
)


def get_db():
    """Open one store connection per request, closed on teardown."""
    if "db" not in g:
        g.db = db_connect()
    return g.db


def current_session():
    if "portal_session" not in g:
        try:
            ensure_bootstrap()
            conn = get_db()
        except Exception:
            log.warning("Document store unavailable; resolving roles from static configuration", exc_info=True)
            conn = None
        g.portal_session = get_session_state(request, conn)
    return g.portal_session


def method_not_allowed(allowed: List[str]) -> Response:
    resp = json_error(f"Method not allowed. Use: {', '.join(allowed)}", 405)
    resp.headers["Allow"] = ", ".join(allowed)
    return resp


def read_json_body() -> Optional[object]:
    try:
        return json.loads(request.get_data(as_text=True) or "")
    except ValueError:
        return None


@flask_app.before_request
def setup_request():
    """Initialize request context."""
    if request.path in STORE_OPTIONAL_PATHS:
        return None
    ensure_bootstrap()
    return None


@flask_app.after_request
def apply_security_headers(response: Response) -> Response:
    for name, value in SECURITY_HEADERS:
        response.headers.setdefault(name, value)
    return response


@flask_app.teardown_appcontext
def close_db(exc: Optional[BaseException]) -> None:
    conn = g.pop("db", None)
    if conn is not None:
        conn.close()


@flask_app.route("/healthz")
def healthz():
    return Response("ok", content_type="text/plain")


@flask_app.route("/api/admin/session", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def admin_session():
    if request.method != "GET":
        return method_not_allowed(["GET"])
    return jsonify(current_session().to_dict())


@flask_app.route("/api/admin/site-maintenance", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def site_maintenance():
    if request.method not in {"GET", "PUT"}:
        return method_not_allowed(["GET", "PUT"])

    session = current_session()
    denied = require_president(session)
    if denied is not None:
        return denied

    conn = get_db()
    if request.method == "GET":
        return jsonify(
            {
                "overrides": [entry.to_dict() for entry in read_access_overrides(conn)],
                "metrics": read_activity_metrics(conn),
                "knownUsers": read_known_users(conn, session.email),
                "viewer": session.email or None,
            }
        )

    body = read_json_body()
    if body is None:
        return json_error("Invalid JSON body.", 400)

    entries = body.get("entries") if isinstance(body, dict) else None
    try:
        saved = write_access_overrides(conn, entries, session.email or None)
    except InvalidOverridePayload as exc:
        return json_error(str(exc), 400)

    return jsonify(
        {
            "saved": True,
            "entries": [entry.to_dict() for entry in saved["entries"]],
            "updatedAt": saved["updatedAt"],
            "updatedBy": saved["updatedBy"],
        }
    )


@flask_app.route("/api/content/chapter-leadership", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def chapter_leadership():
    if request.method not in {"GET", "PUT"}:
        return method_not_allowed(["GET", "PUT"])

    conn = get_db()
    if request.method == "GET":
        return jsonify(read_roster(conn))

    denied = require_site_editor(current_session())
    if denied is not None:
        return denied

    body = read_json_body()
    if body is None:
        return json_error("Invalid JSON body.", 400)

    return jsonify(write_roster(conn, body, current_session().email))


@flask_app.route("/api/analytics/track", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def analytics_track():
    if request.method != "POST":
        return method_not_allowed(["POST"])

    session = current_session()
    if not session.is_authenticated:
        return jsonify({"ok": True, "skipped": True})

    body = read_json_body()
    if not isinstance(body, dict):
        body = {}
    record_activity(
        get_db(),
        session.email,
        event_type=str(body.get("eventType") or "").strip() or "page_view",
        path=str(body.get("path") or "").strip(),
        user_agent=request.headers.get("User-Agent", ""),
        ip=request.headers.get("Cf-Connecting-Ip") or request.remote_addr or "",
    )
    return jsonify({"ok": True})


@flask_app.cli.command("init-db")
def init_db():
    """Initialize the database (Flask CLI command)."""
    server_init_db()
    click.echo("Database initialized successfully!")


@flask_app.cli.command("resolve-email")
@click.argument("email")
@click.option("--no-store", is_flag=True, help="Ignore the roster and overrides; static configuration only.")
def resolve_email(email: str, no_store: bool):
    """Print the session the current configuration grants EMAIL."""
    conn = None
    if not no_store:
        ensure_bootstrap()
        conn = db_connect()
    try:
        session = resolve_session(email, os.environ, conn)
    finally:
        if conn is not None:
            conn.close()
    click.echo(json.dumps(session.to_dict(), indent=2))


if __name__ == "__main__":
    # Run with Flask's development server
    # In production, use: gunicorn or waitress
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    log.info("%s running on http://%s:%s", APP_NAME, HOST, PORT)
    flask_app.run(
        host=HOST,
        port=PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
