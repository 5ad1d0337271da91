"""
Seed principal profiles so header/JWT identities resolve to a Principal.

Input is a JSON list of objects with `id`, `email` and optionally
`full_name`, `role`, `company_id`, `is_active`. Existing rows (by id) are
updated in place.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from sqlalchemy.orm import Session  # noqa: E402

from calcrm.db.session import SessionLocal  # noqa: E402
from calcrm.models.profile import Profile  # noqa: E402

_FIELDS = ("email", "full_name", "role", "company_id", "is_active")


def upsert_profiles(db: Session, rows: list[dict[str, Any]]) -> tuple[int, int]:
    created = updated = 0
    for row in rows:
        profile_id = str(row["id"]).strip()
        data = {key: row[key] for key in _FIELDS if key in row}
        if "email" in data:
            data["email"] = str(data["email"]).strip().lower()
        obj = db.get(Profile, profile_id)
        if obj is None:
            db.add(Profile(id=profile_id, **data))
            created += 1
            continue
        for key, value in data.items():
            setattr(obj, key, value)
        updated += 1
    return created, updated


def main() -> int:
    parser = argparse.ArgumentParser(description="Create or update profile rows from JSON.")
    parser.add_argument("path", type=Path, help="JSON file holding a list of profiles.")
    args = parser.parse_args()

    rows = json.loads(args.path.read_text(encoding="utf-8"))
    if not isinstance(rows, list):
        parser.error("expected a JSON list of profile objects")

    db = SessionLocal()
    try:
        created, updated = upsert_profiles(db, rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    print(f"profiles created={created} updated={updated}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
