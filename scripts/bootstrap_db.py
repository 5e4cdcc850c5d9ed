#!/usr/bin/env python3
"""Run Council Portal database bootstrap and print the stored documents."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.server import DB_BACKEND, DB_PATH, DATABASE_URL, db_connect, ensure_bootstrap, list_sections


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        sections = list_sections(conn)
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", DB_BACKEND)
    if DB_BACKEND == "postgres":
        print("database_url_set:", bool(DATABASE_URL))
    else:
        print("db_path:", DB_PATH)
    for key, updated_at, updated_by in sections:
        print(f"section: {key} updated_at={updated_at} updated_by={updated_by or '-'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
