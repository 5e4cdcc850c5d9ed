"""Role resolution: turn an authenticated email into a Session.

Authority comes from four places, applied in a fixed order:

- static allowlists from the deployment environment,
- the chapter leadership roster (per role category, only when that category
  has entries, so a half-filled roster never locks anyone out),
- manual access overrides,
- the fallback president, who always ends up with every role.

Each step is a small function ``(session, context) -> session`` over an
immutable Session, and ``RESOLUTION_STEPS`` is the pipeline. Reading the
roster or the overrides can fail; such a source is treated as absent and
resolution carries on with what it already has.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from functools import reduce
from typing import Callable, FrozenSet, Mapping, Optional, Tuple

from portal.access_overrides import (
    AccessOverrideEntry,
    find_access_override,
    read_access_overrides,
)
from portal.roster import LeadershipSets, read_leadership_sets
from portal.server import FALLBACK_PRESIDENT_EMAIL, normalize_email, parse_email_list

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    email: str = ""
    is_authenticated: bool = False
    is_council_admin: bool = False
    is_treasury_admin: bool = False
    is_site_editor: bool = False
    is_president: bool = False

    def replace(self, **changes) -> "Session":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "authenticated": self.is_authenticated,
            "email": self.email or None,
            "isCouncilAdmin": self.is_council_admin,
            "isTreasuryAdmin": self.is_treasury_admin,
            "isSiteEditor": self.is_site_editor,
            "isPresident": self.is_president,
        }


ANONYMOUS = Session()


@dataclass(frozen=True)
class ResolutionContext:
    email: str
    is_fallback_president: bool
    council_admins: FrozenSet[str]
    site_editors: FrozenSet[str]
    roster: Optional[LeadershipSets] = None
    override: Optional[AccessOverrideEntry] = None


ResolutionStep = Callable[[Session, ResolutionContext], Session]


def council_admin_emails(env: Mapping[str, str]) -> FrozenSet[str]:
    return frozenset(parse_email_list(env.get("COUNCIL_ADMIN_EMAILS", "")))


def site_editor_emails(env: Mapping[str, str], fallback_email: str = FALLBACK_PRESIDENT_EMAIL) -> FrozenSet[str]:
    """Effective site-editor list; an unconfigured deployment gets exactly the fallback president."""
    configured = parse_email_list(env.get("SITE_ADMIN_EMAILS", "")) or parse_email_list(
        env.get("SITE_EDITOR_EMAILS", "")
    )
    if configured:
        return frozenset(configured)
    return frozenset({fallback_email}) if fallback_email else frozenset()


def apply_static_allowlists(session: Session, ctx: ResolutionContext) -> Session:
    if not session.is_authenticated:
        return session
    fallback = ctx.is_fallback_president
    return session.replace(
        is_council_admin=ctx.email in ctx.council_admins or fallback,
        is_treasury_admin=fallback,
        is_president=fallback,
        is_site_editor=ctx.email in ctx.site_editors,
    )


def apply_leadership_roster(session: Session, ctx: ResolutionContext) -> Session:
    roster = ctx.roster
    if not session.is_authenticated or roster is None:
        return session
    fallback = ctx.is_fallback_president
    changes = {}
    if roster.leadership:
        changes["is_council_admin"] = ctx.email in roster.leadership or fallback
    if roster.treasury:
        changes["is_treasury_admin"] = ctx.email in roster.treasury or fallback
    if roster.president:
        changes["is_president"] = ctx.email in roster.president or fallback
    return session.replace(**changes) if changes else session


def site_editor_implies_council_admin(session: Session, ctx: ResolutionContext) -> Session:
    if session.is_site_editor and not session.is_council_admin:
        return session.replace(is_council_admin=True)
    return session


def apply_access_override(session: Session, ctx: ResolutionContext) -> Session:
    entry = ctx.override
    if not session.is_authenticated or entry is None:
        return session
    return session.replace(
        is_council_admin=entry.is_council_admin.apply(session.is_council_admin),
        is_treasury_admin=entry.is_treasury_admin.apply(session.is_treasury_admin),
        is_site_editor=entry.is_site_editor.apply(session.is_site_editor),
        is_president=entry.is_president.apply(session.is_president),
    )


def president_implies_all_roles(session: Session, ctx: ResolutionContext) -> Session:
    if not session.is_president:
        return session
    return session.replace(is_council_admin=True, is_treasury_admin=True, is_site_editor=True)


def apply_fallback_president(session: Session, ctx: ResolutionContext) -> Session:
    if not ctx.is_fallback_president:
        return session
    return session.replace(
        is_council_admin=True,
        is_treasury_admin=True,
        is_site_editor=True,
        is_president=True,
    )


# Order matters: overrides see the roster-derived roles, coherence is re-applied
# after overrides, and the fallback president rule always runs last.
RESOLUTION_STEPS: Tuple[ResolutionStep, ...] = (
    apply_static_allowlists,
    apply_leadership_roster,
    site_editor_implies_council_admin,
    apply_access_override,
    site_editor_implies_council_admin,
    president_implies_all_roles,
    apply_fallback_president,
)


def _load_roster(conn) -> Optional[LeadershipSets]:
    try:
        return read_leadership_sets(conn)
    except Exception:
        log.warning("Leadership roster unavailable; using static configuration", exc_info=True)
        return None


def _load_override(conn, email: str) -> Optional[AccessOverrideEntry]:
    try:
        return find_access_override(read_access_overrides(conn), email)
    except Exception:
        log.warning("Access overrides unavailable; using computed roles", exc_info=True)
        return None


def build_context(
    email: str,
    env: Mapping[str, str],
    conn=None,
    fallback_email: str = FALLBACK_PRESIDENT_EMAIL,
) -> ResolutionContext:
    fallback_email = normalize_email(fallback_email)
    is_authenticated = bool(email)
    roster = None
    override = None
    if is_authenticated and conn is not None:
        roster = _load_roster(conn)
        override = _load_override(conn, email)
    return ResolutionContext(
        email=email,
        is_fallback_president=is_authenticated and bool(fallback_email) and email == fallback_email,
        council_admins=council_admin_emails(env),
        site_editors=site_editor_emails(env, fallback_email),
        roster=roster,
        override=override,
    )


def resolve_session(
    email: str,
    env: Optional[Mapping[str, str]] = None,
    conn=None,
    fallback_email: str = FALLBACK_PRESIDENT_EMAIL,
    steps: Tuple[ResolutionStep, ...] = RESOLUTION_STEPS,
) -> Session:
    """Compute the Session for ``email``.

    ``env`` defaults to ``os.environ``; ``conn`` is an optional store connection.
    Without a store only static configuration and the fallback president apply.
    """
    normalized = normalize_email(email)
    if not normalized:
        return ANONYMOUS
    ctx = build_context(normalized, os.environ if env is None else env, conn, fallback_email)
    base = Session(email=normalized, is_authenticated=True)
    return reduce(lambda session, step: step(session, ctx), steps, base)
