"""
Database migration entrypoint for the settlement workers.

Applies the Alembic migrations of the settlement store.  The database URI
comes from ``--uri``, the ``STATE_STORE_URI`` environment variable or
``alembic.ini``, in that order; async driver URLs (``sqlite+aiosqlite``,
``postgresql+asyncpg``) are used as is.  Run it in deployment pipelines
before starting the workers.
"""

from __future__ import annotations

import argparse
import os
import pathlib

from alembic import command
from alembic.config import Config


def build_config(uri: str | None = None) -> Config:
    base_dir = pathlib.Path(__file__).resolve().parents[1]
    cfg = Config(str(base_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    db_url = uri or os.getenv("STATE_STORE_URI")
    if db_url:
        cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def main() -> None:
    ap = argparse.ArgumentParser(description="Apply settlement store migrations.")
    ap.add_argument("--uri", help="SQLAlchemy database URI")
    ap.add_argument("--revision", default="head", help="target revision (default: head)")
    ap.add_argument("--downgrade", action="store_true", help="downgrade to --revision instead")
    args = ap.parse_args()
    cfg = build_config(args.uri)
    if args.downgrade:
        command.downgrade(cfg, args.revision)
    else:
        command.upgrade(cfg, args.revision)


if __name__ == "__main__":
    main()
