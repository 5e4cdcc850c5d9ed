#!/usr/bin/env python3
"""Fast health smoke test for local/dev CI.

Uses in-process WSGI calls (no real HTTP server needed) for deterministic checks.
"""

import io
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.flask_app import flask_app
from portal.server import ensure_bootstrap


def run_request(path="/healthz", method="GET", body=b"", headers=None):
    """Execute a minimal WSGI request against the app callable."""
    status_holder = {}

    def start_response(status, response_headers, exc_info=None):
        status_holder["status"] = status
        status_holder["headers"] = response_headers

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": "",
        "SERVER_NAME": "localhost",
        "SERVER_PORT": "8080",
        "wsgi.url_scheme": "http",
        "wsgi.input": io.BytesIO(body),
        "wsgi.errors": sys.stderr,
        "CONTENT_LENGTH": str(len(body)),
        "REMOTE_ADDR": "127.0.0.1",
        "HTTP_USER_AGENT": "smoke-test",
    }
    for name, value in (headers or {}).items():
        environ["HTTP_" + name.upper().replace("-", "_")] = value

    chunks = flask_app(environ, start_response)
    payload = b"".join(chunks)
    return status_holder["status"], payload.decode("utf-8", errors="ignore")


if __name__ == "__main__":
    ensure_bootstrap()
    status, body = run_request("/healthz")
    assert status.startswith("200"), f"health failed: {status}"
    assert "ok" in body.lower(), "health payload missing"

    status, body = run_request("/api/admin/session")
    assert status.startswith("200"), f"session failed: {status}"
    assert json.loads(body)["authenticated"] is False, "anonymous probe resolved to a user"

    status, body = run_request(
        "/api/admin/session",
        headers={"Cf-Access-Authenticated-User-Email": "Smoke.Test@Example.org"},
    )
    assert json.loads(body)["email"] == "smoke.test@example.org", "header identity not picked up"
    print("SMOKE_OK")
