"""Who is making this request?

The portal sits behind an authenticating perimeter proxy. The proxy leaves
several traces on the request it forwards, and each provider below knows how
to read one of them. Providers are tried in order and the first non-empty
email wins:

1. the authenticated-user-email header set by the proxy,
2. the forwarded identity assertion header (JWT-shaped, payload only),
3. the proxy's identity endpoint, queried with the caller's cookies,
4. the proxy's session cookie (JWT-shaped, payload only).

Headers come first because they are cheaper and, under the deployment's trust
model, harder to forge than anything reconstructed from cookies. Tokens are not
signature-checked here; the perimeter already did that.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib import error as urlerror
from urllib import request as urlrequest

from portal.server import IDENTITY_LOOKUP_TIMEOUT, normalize_email

log = logging.getLogger(__name__)

EMAIL_HEADER_CANDIDATES = (
    "cf-access-authenticated-user-email",
    "x-cf-access-authenticated-user-email",
)
ASSERTION_HEADER_CANDIDATES = (
    "cf-access-jwt-assertion",
    "x-cf-access-jwt-assertion",
)
SESSION_COOKIE_NAME = "CF_Authorization"
IDENTITY_ENDPOINT_PATH = "/cdn-cgi/access/get-identity"

IdentityProvider = Callable[[object], Optional[str]]


def _first_header(request, names: Iterable[str]) -> str:
    for name in names:
        value = request.headers.get(name)
        if value and str(value).strip():
            return str(value).strip()
    return ""


def _find_cookie(request, name: str) -> str:
    wanted = name.lower()
    for key, value in request.cookies.items():
        if key.lower() == wanted and value:
            return str(value).strip()
    return ""


def decode_jwt_payload(token: str) -> Optional[Dict[str, object]]:
    """Decode the claims segment of a ``header.payload.signature`` token.

    Returns None for anything that is not a base64url-encoded JSON object.
    """
    parts = str(token or "").strip().split(".")
    if len(parts) < 2 or not parts[1]:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        raw = base64.urlsafe_b64decode(segment.encode("ascii"))
        claims = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(claims, dict):
        return None
    return claims


def _text_claim(value: object) -> str:
    # Only string claims name a user.
    return normalize_email(value) if isinstance(value, str) else ""


def email_from_claims(claims: Optional[Dict[str, object]]) -> str:
    if not claims:
        return ""
    return _text_claim(claims.get("email")) or _text_claim(claims.get("sub"))


def from_email_header(request) -> Optional[str]:
    return normalize_email(_first_header(request, EMAIL_HEADER_CANDIDATES)) or None


def from_assertion_header(request) -> Optional[str]:
    token = _first_header(request, ASSERTION_HEADER_CANDIDATES)
    if not token:
        return None
    email = email_from_claims(decode_jwt_payload(token))
    if not email:
        log.debug("Identity assertion header present but carried no usable claim")
    return email or None


def fetch_identity(origin: str, cookie_header: str, timeout: float = IDENTITY_LOOKUP_TIMEOUT) -> str:
    """Ask the perimeter's identity endpoint who owns the forwarded cookies.

    Any network error, non-2xx status or unexpected body yields ``""``.
    """
    req = urlrequest.Request(f"{origin.rstrip('/')}{IDENTITY_ENDPOINT_PATH}", method="GET")
    req.add_header("Accept", "application/json")
    if cookie_header:
        req.add_header("Cookie", cookie_header)

    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            status = int(getattr(resp, "status", 200) or 200)
            if status < 200 or status >= 300:
                log.debug("Identity endpoint returned %s", status)
                return ""
            raw = resp.read().decode("utf-8", errors="ignore")
    except urlerror.HTTPError as exc:
        log.debug("Identity endpoint returned %s", exc.code)
        return ""
    except (urlerror.URLError, OSError, ValueError) as exc:
        log.debug("Identity endpoint unreachable: %s", exc)
        return ""

    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""

    email = _text_claim(body.get("email"))
    if not email and isinstance(body.get("identity"), dict):
        email = _text_claim(body["identity"].get("email"))
    return email


def from_identity_endpoint(request) -> Optional[str]:
    # Only worth a round-trip when the perimeter has visibly started a session.
    has_session_cookie = bool(_find_cookie(request, SESSION_COOKIE_NAME))
    has_assertion = bool(_first_header(request, ASSERTION_HEADER_CANDIDATES))
    if not has_session_cookie and not has_assertion:
        return None
    origin = str(getattr(request, "host_url", "") or "").rstrip("/")
    if not origin:
        return None
    return fetch_identity(origin, request.headers.get("cookie", "")) or None


def from_session_cookie(request) -> Optional[str]:
    token = _find_cookie(request, SESSION_COOKIE_NAME)
    if not token:
        return None
    return email_from_claims(decode_jwt_payload(token)) or None


IDENTITY_PROVIDERS: Tuple[IdentityProvider, ...] = (
    from_email_header,
    from_assertion_header,
    from_identity_endpoint,
    from_session_cookie,
)


def first_non_empty(providers: Iterable[IdentityProvider], request) -> str:
    for provider in providers:
        try:
            value = provider(request)
        except Exception:
            log.warning("Identity provider %s failed", getattr(provider, "__name__", provider), exc_info=True)
            continue
        email = normalize_email(value)
        if email:
            return email
    return ""


def extract_identity(request, providers: Iterable[IdentityProvider] = IDENTITY_PROVIDERS) -> str:
    """Return the caller's normalized email, or ``""`` when nobody is signed in."""
    return first_non_empty(providers, request)
