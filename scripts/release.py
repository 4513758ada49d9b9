"""
Release phase: migrate the schema to head, then seed RBAC, finance categories
and the first admin. Safe to run on every deploy.

Usage:
  python scripts/release.py [--revision REV] [--skip-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def release_database_url(environ=os.environ) -> str:
    url = (environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against SQLite in production. Point DATABASE_URL at Postgres.")
    return url


def migrate(database_url: str, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(cfg, revision)


def run_release(*, revision: str = "head", seed: bool = True) -> None:
    database_url = release_database_url()
    print(f"[release] upgrading schema to {revision}", flush=True)
    migrate(database_url, revision)
    if seed:
        from scripts import init_db

        print("[release] seeding permissions, roles and admin user", flush=True)
        init_db.seed_only(database_url=database_url)
    print("[release] done", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--revision", default="head")
    parser.add_argument("--skip-seed", action="store_true")
    args = parser.parse_args(argv)
    run_release(revision=args.revision, seed=not args.skip_seed)


if __name__ == "__main__":
    main()
