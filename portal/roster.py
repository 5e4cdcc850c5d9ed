"""Chapter leadership roster: storage shape and derived role eligibility."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from portal.server import (
    LEADERSHIP_SECTION_KEY,
    clamp_text,
    normalize_email,
    read_section,
    write_section,
)

log = logging.getLogger(__name__)

ROSTER_LISTS = (("executiveBoard", "eb"), ("additionalChairs", "ch"))
MAX_MEMBERS_PER_LIST = 40
TREASURY_TITLES = frozenset({"president", "treasurer", "financialsecretary"})
PRESIDENT_TITLE = "president"


@dataclass(frozen=True)
class LeadershipSets:
    leadership: FrozenSet[str] = frozenset()
    treasury: FrozenSet[str] = frozenset()
    president: FrozenSet[str] = frozenset()

    def is_empty(self) -> bool:
        return not (self.leadership or self.treasury or self.president)


def title_key(title: object) -> str:
    """Compare titles ignoring case and whitespace ("Financial  Secretary" == "financialsecretary")."""
    return "".join(str(title or "").lower().split())


def sanitize_member(raw: object, prefix: str, index: int) -> Dict[str, object]:
    data = raw if isinstance(raw, dict) else {}
    fallback_id = f"{prefix}-{index + 1}"
    member: Dict[str, object] = {
        "id": clamp_text(data.get("id"), 64) or fallback_id,
        "name": clamp_text(data.get("name"), 120),
        "title": clamp_text(data.get("title"), 120),
        "chapter": clamp_text(data.get("chapter"), 160),
        "imageUrl": clamp_text(data.get("imageUrl"), 2048) or None,
    }
    email = clamp_text(data.get("email"), 160)
    if email:
        member["email"] = email
    return member


def sanitize_roster(payload: object) -> Dict[str, List[Dict[str, object]]]:
    """Normalize a roster document; unknown keys are dropped, lists are capped."""
    data = payload if isinstance(payload, dict) else {}
    out: Dict[str, List[Dict[str, object]]] = {}
    for key, prefix in ROSTER_LISTS:
        raw_list = data.get(key)
        if not isinstance(raw_list, list):
            out[key] = []
            continue
        out[key] = [sanitize_member(item, prefix, idx) for idx, item in enumerate(raw_list[:MAX_MEMBERS_PER_LIST])]
    return out


def derive_leadership_sets(roster: object) -> LeadershipSets:
    """Split a roster into the email sets that grant council, treasury and president roles.

    Every listed member with an email counts as leadership, whichever list they
    are on. Treasury and president eligibility come from the member's title.
    """
    data = roster if isinstance(roster, dict) else {}
    leadership = set()
    treasury = set()
    president = set()
    for key, _ in ROSTER_LISTS:
        members = data.get(key)
        if not isinstance(members, list):
            continue
        for member in members:
            if not isinstance(member, dict):
                continue
            email = normalize_email(member.get("email"))
            if not email:
                continue
            leadership.add(email)
            title = title_key(member.get("title"))
            if title in TREASURY_TITLES:
                treasury.add(email)
            if title == PRESIDENT_TITLE:
                president.add(email)
    return LeadershipSets(frozenset(leadership), frozenset(treasury), frozenset(president))


def read_roster(conn) -> Dict[str, object]:
    """Return the stored roster as ``{found, data, updatedAt, updatedBy}`` with ``data`` sanitized."""
    section = read_section(conn, LEADERSHIP_SECTION_KEY)
    return {
        "found": section["found"],
        "data": sanitize_roster(section["data"]),
        "updatedAt": section["updated_at"],
        "updatedBy": section["updated_by"],
    }


def write_roster(conn, payload: object, email: Optional[str]) -> Dict[str, object]:
    roster = sanitize_roster(payload)
    saved = write_section(conn, LEADERSHIP_SECTION_KEY, roster, email)
    log.info("Leadership roster replaced by %s", email or "unknown")
    return {
        "found": True,
        "data": roster,
        "updatedAt": saved["updated_at"],
        "updatedBy": saved["updated_by"],
    }


def read_leadership_sets(conn) -> LeadershipSets:
    """Read the roster and derive role sets; a missing or unusable document gives empty sets."""
    if conn is None:
        return LeadershipSets()
    section = read_section(conn, LEADERSHIP_SECTION_KEY)
    return derive_leadership_sets(section["data"])
