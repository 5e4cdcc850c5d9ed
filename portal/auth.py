"""Request-level session state and capability guards."""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

from flask import Response, jsonify

from portal.identity import extract_identity
from portal.roles import ANONYMOUS, Session, resolve_session

log = logging.getLogger(__name__)

ROLE_LABELS = {
    "is_council_admin": "council admin",
    "is_treasury_admin": "treasury admin",
    "is_site_editor": "site editor",
    "is_president": "president",
}


def get_session_state(request, conn=None, env: Optional[Mapping[str, str]] = None) -> Session:
    """Identify the caller and resolve their roles.

    Never raises; anything unexpected degrades to a logged-out Session.
    """
    try:
        email = extract_identity(request)
    except Exception:
        log.warning("Identity extraction failed", exc_info=True)
        return ANONYMOUS
    try:
        return resolve_session(email, os.environ if env is None else env, conn)
    except Exception:
        log.warning("Role resolution failed for %s", email, exc_info=True)
        return Session(email=email, is_authenticated=bool(email))


def json_error(message: str, status: int) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    return resp


def require_auth(session: Session) -> Optional[Response]:
    if not session.is_authenticated:
        return json_error("Unauthenticated.", 401)
    return None


def require_role(session: Session, flag: str) -> Optional[Response]:
    """Return an error response unless ``session`` holds the role named by ``flag``."""
    denied = require_auth(session)
    if denied is not None:
        return denied
    if not getattr(session, flag, False):
        return json_error(f"Forbidden: {ROLE_LABELS.get(flag, flag)} access required.", 403)
    return None


def require_council_admin(session: Session) -> Optional[Response]:
    return require_role(session, "is_council_admin")


def require_treasury_admin(session: Session) -> Optional[Response]:
    return require_role(session, "is_treasury_admin")


def require_site_editor(session: Session) -> Optional[Response]:
    return require_role(session, "is_site_editor")


def require_president(session: Session) -> Optional[Response]:
    return require_role(session, "is_president")
