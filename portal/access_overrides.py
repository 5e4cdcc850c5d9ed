"""Manual per-user role corrections.

Operators use these to fix someone's access without a redeploy. Every role
flag is tri-state: inherit the computed value, or force it on or off. The whole
list lives in one stored document and is always replaced as a unit, so the
last writer wins.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from portal.server import (
    ACCESS_OVERRIDES_SECTION_KEY,
    LEADERSHIP_SECTION_KEY,
    MEMBER_DIRECTORY_SECTION_KEY,
    normalize_email,
    read_section,
    read_sections,
    write_section,
)

log = logging.getLogger(__name__)

class InvalidOverridePayload(ValueError):
    """Raised when an override write does not carry a list of entries."""


class OverrideFlag(enum.Enum):
    INHERIT = None
    FORCE_TRUE = True
    FORCE_FALSE = False

    @classmethod
    def parse(cls, value: object) -> "OverrideFlag":
        if value is True or value == "true":
            return cls.FORCE_TRUE
        if value is False or value == "false":
            return cls.FORCE_FALSE
        return cls.INHERIT

    def apply(self, current: bool) -> bool:
        if self is OverrideFlag.INHERIT:
            return current
        return self.value

    def to_json(self) -> Optional[bool]:
        return self.value


@dataclass(frozen=True)
class AccessOverrideEntry:
    email: str
    is_council_admin: OverrideFlag = OverrideFlag.INHERIT
    is_treasury_admin: OverrideFlag = OverrideFlag.INHERIT
    is_site_editor: OverrideFlag = OverrideFlag.INHERIT
    is_president: OverrideFlag = OverrideFlag.INHERIT
    note: str = ""
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "email": self.email,
            "isCouncilAdmin": self.is_council_admin.to_json(),
            "isTreasuryAdmin": self.is_treasury_admin.to_json(),
            "isSiteEditor": self.is_site_editor.to_json(),
            "isPresident": self.is_president.to_json(),
            "note": self.note,
            "updatedAt": self.updated_at,
            "updatedBy": self.updated_by,
        }


def _optional_text(value: object) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def sanitize_entry(raw: object) -> Optional[AccessOverrideEntry]:
    if not isinstance(raw, dict):
        return None
    email = normalize_email(raw.get("email"))
    if not email:
        return None
    return AccessOverrideEntry(
        email=email,
        is_council_admin=OverrideFlag.parse(raw.get("isCouncilAdmin")),
        is_treasury_admin=OverrideFlag.parse(raw.get("isTreasuryAdmin")),
        is_site_editor=OverrideFlag.parse(raw.get("isSiteEditor")),
        is_president=OverrideFlag.parse(raw.get("isPresident")),
        note=str(raw.get("note") or "").strip(),
        updated_at=_optional_text(raw.get("updatedAt")),
        updated_by=_optional_text(raw.get("updatedBy")),
    )


def sanitize_entries(raw_entries: Iterable[object], later_wins: bool = True) -> List[AccessOverrideEntry]:
    """Drop entries without an email and keep one entry per email.

    Writes let the later entry win. Stored documents are read with
    ``later_wins=False`` so the first entry for an email keeps governing it.
    """
    merged: Dict[str, AccessOverrideEntry] = {}
    for raw in raw_entries:
        entry = sanitize_entry(raw)
        if entry is None:
            continue
        if later_wins or entry.email not in merged:
            merged[entry.email] = entry
    return list(merged.values())


def read_access_overrides(conn) -> List[AccessOverrideEntry]:
    """Return the stored overrides; an absent store or unusable document reads as ``[]``."""
    if conn is None:
        return []
    section = read_section(conn, ACCESS_OVERRIDES_SECTION_KEY)
    if not section["found"]:
        return []
    data = section["data"]
    entries = data.get("entries") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        log.warning("Ignoring malformed %s document", ACCESS_OVERRIDES_SECTION_KEY)
        return []
    return sanitize_entries(entries, later_wins=False)


def write_access_overrides(conn, entries: object, updated_by: Optional[str]) -> Dict[str, object]:
    """Replace the full override list and stamp it with the acting user.

    Callers must send the complete list; entries missing from it are removed.
    """
    if not isinstance(entries, list):
        raise InvalidOverridePayload("Expected payload shape: { entries: [...] }")

    sanitized = sanitize_entries(entries)
    actor = normalize_email(updated_by) or None
    saved = write_section(
        conn,
        ACCESS_OVERRIDES_SECTION_KEY,
        {"entries": [entry.to_dict() for entry in sanitized]},
        actor,
    )
    log.info("Access overrides replaced by %s (%d entries)", actor or "unknown", len(sanitized))
    return {
        "entries": sanitized,
        "updatedAt": saved["updated_at"],
        "updatedBy": actor,
    }


def find_access_override(entries: Iterable[AccessOverrideEntry], email: str) -> Optional[AccessOverrideEntry]:
    target = normalize_email(email)
    if not target:
        return None
    for entry in entries:
        if entry.email == target:
            return entry
    return None


def read_known_users(conn, viewer_email: Optional[str] = None) -> List[str]:
    """Emails an operator is likely to want to override: directory members, roster members, the viewer."""
    emails = set()
    viewer = normalize_email(viewer_email)
    if viewer:
        emails.add(viewer)
    if conn is None:
        return sorted(emails)

    docs = read_sections(conn, [MEMBER_DIRECTORY_SECTION_KEY, LEADERSHIP_SECTION_KEY])

    directory = docs[MEMBER_DIRECTORY_SECTION_KEY]
    if isinstance(directory, dict) and isinstance(directory.get("entries"), list):
        for entry in directory["entries"]:
            if isinstance(entry, dict) and normalize_email(entry.get("email")):
                emails.add(normalize_email(entry.get("email")))

    roster = docs[LEADERSHIP_SECTION_KEY]
    if isinstance(roster, dict):
        for key in ("executiveBoard", "additionalChairs"):
            members = roster.get(key)
            if not isinstance(members, list):
                continue
            for member in members:
                if isinstance(member, dict) and normalize_email(member.get("email")):
                    emails.add(normalize_email(member.get("email")))

    return sorted(emails)
