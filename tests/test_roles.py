"""Role resolution across allowlists, roster, overrides and the fallback president."""

import pytest

from conftest import store_document, store_raw_document
from portal import roles
from portal.access_overrides import AccessOverrideEntry, OverrideFlag
from portal.roles import FALLBACK_PRESIDENT_EMAIL, Session, resolve_session
from portal.roster import LeadershipSets

ALL_FALSE_OVERRIDE = {
    "isCouncilAdmin": False,
    "isTreasuryAdmin": False,
    "isSiteEditor": False,
    "isPresident": False,
}


def flags(session):
    return (
        session.is_council_admin,
        session.is_treasury_admin,
        session.is_site_editor,
        session.is_president,
    )


class BrokenConnection:
    def execute(self, *args, **kwargs):
        raise RuntimeError("database is locked")


def test_unauthenticated_session_has_no_roles():
    session = resolve_session("", {"COUNCIL_ADMIN_EMAILS": "a@example.org"})
    assert session == Session()
    assert session.to_dict() == {
        "authenticated": False,
        "email": None,
        "isCouncilAdmin": False,
        "isTreasuryAdmin": False,
        "isSiteEditor": False,
        "isPresident": False,
    }


def test_email_is_normalized_and_authenticated():
    session = resolve_session("  Member@Example.ORG ", {})
    assert session.email == "member@example.org"
    assert session.is_authenticated
    assert flags(session) == (False, False, False, False)


def test_council_allowlist_without_store():
    env = {"COUNCIL_ADMIN_EMAILS": "Admin@Example.org, other@example.org"}
    session = resolve_session("admin@example.org", env)
    assert flags(session) == (True, False, False, False)


def test_fallback_president_without_store():
    assert flags(resolve_session(FALLBACK_PRESIDENT_EMAIL, {})) == (True, True, True, True)


def test_fallback_president_survives_all_false_override_and_foreign_roster(conn):
    store_document(conn, "access_overrides", {"entries": [dict(ALL_FALSE_OVERRIDE, email=FALLBACK_PRESIDENT_EMAIL)]})
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "someone@example.org", "title": "President"}], "additionalChairs": []},
    )
    env = {"COUNCIL_ADMIN_EMAILS": "someone@example.org", "SITE_ADMIN_EMAILS": "someone@example.org"}

    session = resolve_session(FALLBACK_PRESIDENT_EMAIL, env, conn)
    assert flags(session) == (True, True, True, True)


def test_all_inherit_override_is_a_no_op(conn):
    env = {"COUNCIL_ADMIN_EMAILS": "kim@example.org"}
    before = resolve_session("kim@example.org", env, conn)
    store_document(conn, "access_overrides", {"entries": [{"email": "kim@example.org", "note": "checked"}]})

    assert resolve_session("kim@example.org", env, conn) == before


def test_president_override_grants_every_role(conn):
    store_document(conn, "access_overrides", {"entries": [{"email": "pat@example.org", "isPresident": True}]})
    session = resolve_session("pat@example.org", {}, conn)
    assert flags(session) == (True, True, True, True)


def test_override_can_revoke_a_computed_role(conn):
    store_document(conn, "access_overrides", {"entries": [{"email": "lee@example.org", "isCouncilAdmin": "false"}]})
    session = resolve_session("lee@example.org", {"COUNCIL_ADMIN_EMAILS": "lee@example.org"}, conn)
    assert session.is_council_admin is False


def test_site_editor_override_keeps_council_admin(conn):
    store_document(
        conn,
        "access_overrides",
        {"entries": [{"email": "sam@example.org", "isSiteEditor": True, "isCouncilAdmin": False}]},
    )
    session = resolve_session("sam@example.org", {}, conn)
    assert session.is_site_editor and session.is_council_admin


@pytest.mark.parametrize("variable", ["SITE_ADMIN_EMAILS", "SITE_EDITOR_EMAILS"])
def test_site_editor_is_always_council_admin(conn, variable):
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "chair@example.org", "title": "Chair"}], "additionalChairs": []},
    )
    session = resolve_session("editor@example.org", {variable: "editor@example.org"}, conn)
    assert session.is_site_editor
    assert session.is_council_admin


def test_site_admin_list_takes_precedence_over_legacy_alias():
    env = {"SITE_ADMIN_EMAILS": "new@example.org", "SITE_EDITOR_EMAILS": "old@example.org"}
    assert resolve_session("new@example.org", env).is_site_editor
    assert not resolve_session("old@example.org", env).is_site_editor


def test_unconfigured_site_editors_default_to_fallback_president():
    assert roles.site_editor_emails({}) == frozenset({FALLBACK_PRESIDENT_EMAIL})
    assert not resolve_session("anyone@example.org", {}).is_site_editor


def test_empty_roster_does_not_lock_out_allowlisted_admin(conn):
    store_document(conn, "chapter_leadership", {"executiveBoard": [], "additionalChairs": []})
    session = resolve_session("admin@example.org", {"COUNCIL_ADMIN_EMAILS": "admin@example.org"}, conn)
    assert session.is_council_admin


def test_populated_roster_is_authoritative_for_council_admin(conn):
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "vp@example.org", "title": "Vice President"}], "additionalChairs": []},
    )
    env = {"COUNCIL_ADMIN_EMAILS": "admin@example.org"}
    assert resolve_session("vp@example.org", env, conn).is_council_admin
    assert not resolve_session("admin@example.org", env, conn).is_council_admin


def test_treasurer_on_roster(conn):
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "t@x.org", "title": "Treasurer"}], "additionalChairs": []},
    )
    session = resolve_session("t@x.org", {"COUNCIL_ADMIN_EMAILS": ""}, conn)
    # Every listed member is leadership, so the treasurer is also a council admin.
    assert session.is_council_admin is True
    assert session.is_treasury_admin is True
    assert session.is_president is False


def test_roster_president_gets_every_role(conn):
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "prez@example.org", "title": "  PRESIDENT "}], "additionalChairs": []},
    )
    assert flags(resolve_session("prez@example.org", {}, conn)) == (True, True, True, True)


def test_malformed_override_document_is_ignored(conn):
    store_raw_document(conn, "access_overrides", "{not json")
    store_document(
        conn,
        "chapter_leadership",
        {"executiveBoard": [{"email": "fs@example.org", "title": "Financial Secretary"}], "additionalChairs": []},
    )
    session = resolve_session("fs@example.org", {}, conn)
    assert session.is_authenticated
    assert session.is_treasury_admin


def test_store_failures_fall_back_to_static_configuration():
    session = resolve_session("admin@example.org", {"COUNCIL_ADMIN_EMAILS": "admin@example.org"}, BrokenConnection())
    assert session.is_authenticated
    assert flags(session) == (True, False, False, False)


def test_custom_fallback_email_is_honored():
    session = resolve_session("owner@example.org", {}, fallback_email="Owner@Example.org")
    assert flags(session) == (True, True, True, True)


def test_roster_step_leaves_empty_categories_untouched():
    ctx = roles.ResolutionContext(
        email="x@example.org",
        is_fallback_president=False,
        council_admins=frozenset({"x@example.org"}),
        site_editors=frozenset(),
        roster=LeadershipSets(treasury=frozenset({"y@example.org"})),
    )
    start = Session(email="x@example.org", is_authenticated=True, is_council_admin=True, is_treasury_admin=True)
    after = roles.apply_leadership_roster(start, ctx)
    assert after.is_council_admin is True
    assert after.is_treasury_admin is False


def test_override_step_applies_each_flag_independently():
    ctx = roles.ResolutionContext(
        email="x@example.org",
        is_fallback_president=False,
        council_admins=frozenset(),
        site_editors=frozenset(),
        override=AccessOverrideEntry(
            email="x@example.org",
            is_treasury_admin=OverrideFlag.FORCE_TRUE,
            is_council_admin=OverrideFlag.FORCE_FALSE,
        ),
    )
    start = Session(email="x@example.org", is_authenticated=True, is_council_admin=True, is_site_editor=True)
    after = roles.apply_access_override(start, ctx)
    assert flags(after) == (False, True, True, False)
    assert start.is_council_admin is True
