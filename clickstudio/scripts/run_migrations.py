"""
Run Alembic migrations to head, or report migration state.

Usage:
    python -m clickstudio.scripts.run_migrations
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine


BASELINE_REVISION = "20261001_01"


def _build_alembic_config(database_url: str | None = None) -> Config:
    project_root = Path(__file__).resolve().parents[2]
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")
    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(project_root / "alembic"))
    db_url = database_url or os.getenv("DATABASE_URL")
    if db_url:
        cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _needs_bootstrap_stamp(cfg: Config) -> bool:
    db_url = cfg.get_main_option("sqlalchemy.url")
    if not db_url:
        return False
    engine = create_engine(db_url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    if "alembic_version" in tables:
        return False
    # Databases built by create_all() carry the baseline schema without Alembic state.
    return "rbac_users" in tables


def run_migrations_to_head(database_url: str | None = None) -> None:
    cfg = _build_alembic_config(database_url)
    if _needs_bootstrap_stamp(cfg):
        command.stamp(cfg, BASELINE_REVISION)
    command.upgrade(cfg, "head")


def migration_status(engine: Engine) -> dict[str, Any]:
    cfg = _build_alembic_config(engine.url.render_as_string(hide_password=False))
    script = ScriptDirectory.from_config(cfg)
    heads = list(script.get_heads())
    with engine.connect() as conn:
        current = list(MigrationContext.configure(conn).get_current_heads())
    pending: list[str] = []
    if set(current) != set(heads):
        # Newest first; the history is linear.
        for rev in script.walk_revisions():
            if rev.revision in current:
                break
            pending.append(rev.revision)
    return {
        "current": current[0] if len(current) == 1 else (current or None),
        "head": heads[0] if len(heads) == 1 else heads,
        "pending": list(reversed(pending)),
        "upToDate": not pending,
    }


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    try:
        run_migrations_to_head()
    except Exception as exc:
        logging.getLogger("migrations").error("Migration failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
