"""
Safe DB initializer:
- If the database is empty: create the tables from the SQLAlchemy models.
- If some tables exist: print a warning and exit without touching anything.
- Optional override: set ALLOW_CREATE_MISSING=true to create only missing tables.
"""
import os
import sys

from sqlalchemy import inspect
from sqlalchemy import MetaData
from sqlalchemy.exc import SQLAlchemyError

from taskboard import models  # noqa: F401  (registers tables on Base.metadata)
from taskboard.db import Base


def allow_create_missing() -> bool:
    return os.getenv("ALLOW_CREATE_MISSING", "").lower() in {"1", "true", "yes"}


def main(engine=None) -> int:
    if engine is None:
        from taskboard.db import engine

    try:
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError as e:
        print(f"[init_db] Failed to inspect database: {e}", file=sys.stderr)
        return 1

    defined = set(Base.metadata.tables.keys())

    if not existing:
        print("[init_db] Empty database detected. Creating all tables...")
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as e:
            print(f"[init_db] create_all failed: {e}", file=sys.stderr)
            return 1
        print("[init_db] All tables created.")
        return 0

    missing = sorted(defined - existing)
    if not missing:
        print("[init_db] Schema tables already exist. Nothing to do.")
        return 0

    print(f"[init_db] Detected missing tables: {missing}")
    if not allow_create_missing():
        print(
            "[init_db] Will NOT modify a partially-initialized database.\n"
            "         Set ALLOW_CREATE_MISSING=true to create only the missing tables."
        )
        return 2

    try:
        md = MetaData()
        for name in missing:
            Base.metadata.tables[name].to_metadata(md)
        md.create_all(bind=engine)
    except SQLAlchemyError as e:
        print(f"[init_db] Failed to create missing tables: {e}", file=sys.stderr)
        return 1
    print("[init_db] Missing tables created.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
