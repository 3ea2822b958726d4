"""
Create tables directly from the models (local development only).

Production databases are migrated with Alembic (scripts/release.py).

Usage:
  python scripts/init_db.py
"""

import os
import sys
from pathlib import Path

from sqlalchemy import create_engine

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.hierarchies.models import Base


def create_tables(*, database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///hierarchies.db").strip()
    engine = create_engine(db_url, future=True)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    print(f"Tables ready on {engine.url.render_as_string(hide_password=True)}", flush=True)


def main() -> None:
    create_tables()


if __name__ == "__main__":
    main()
