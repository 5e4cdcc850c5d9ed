"""Shared fixtures: a throwaway SQLite store and request builders."""

import base64
import json
import sys
from pathlib import Path

import pytest
from werkzeug.test import EnvironBuilder

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal import server  # noqa: E402

ROLE_ENV_VARS = ("COUNCIL_ADMIN_EMAILS", "SITE_ADMIN_EMAILS", "SITE_EDITOR_EMAILS")


@pytest.fixture(autouse=True)
def clean_role_env(monkeypatch):
    for name in ROLE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "portal.db"
    monkeypatch.setattr(server, "DB_PATH", path)
    monkeypatch.setattr(server, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(server, "BOOTSTRAPPED", False)
    return path


@pytest.fixture
def conn(db_path):
    server.init_db()
    connection = server.db_connect()
    yield connection
    connection.close()


@pytest.fixture
def client(db_path):
    from portal.flask_app import flask_app

    flask_app.config["TESTING"] = True
    with flask_app.test_client() as test_client:
        yield test_client


def make_token(claims, header=None):
    """Build an unsigned JWT-shaped token carrying ``claims``."""

    def segment(obj):
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{segment(header or {'alg': 'RS256', 'typ': 'JWT'})}.{segment(claims)}.signature"


def make_request(headers=None, base_url="https://portal.example.org"):
    builder = EnvironBuilder(path="/api/admin/session", base_url=base_url, headers=headers or {})
    try:
        return builder.get_request()
    finally:
        builder.close()


def store_document(conn, key, payload):
    server.write_section(conn, key, payload, "seed@example.org")


def store_raw_document(conn, key, raw_text):
    conn.execute(
        "INSERT INTO portal_content_state (section_key, payload_json, updated_at, updated_by) VALUES (?, ?, ?, ?)",
        (key, raw_text, server.iso(), None),
    )
    conn.commit()
