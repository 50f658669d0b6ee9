"""
Database session management for the RBAC server.

Uses SQLAlchemy 2.x style `Session` and declarative models. The engine
and session factory are built once per application by ``create_app`` and
kept on ``app.state``; ``get_db`` hands a session to FastAPI routes.
Two backends are supported: an embedded SQLite file for single-instance
deployments and PostgreSQL for multi-instance ones.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def build_engine(database_url: str) -> Engine:
    if is_sqlite_url(database_url):
        url = make_url(database_url)
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        # Requests run on the threadpool; one file, many threads.
        engine = create_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn, _record) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=_env_int("DB_POOL_SIZE", 5),
        max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
        pool_recycle=_env_int("DB_POOL_RECYCLE_SEC", 1800),
        pool_timeout=_env_int("DB_POOL_TIMEOUT_SEC", 30),
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db(request: Request):
    """Yield a database session for FastAPI dependencies."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@dataclass
class DatabaseHealth:
    healthy: bool
    type: str
    error: str | None = None


def check_database_health(engine: Engine) -> DatabaseHealth:
    db_type = "sqlite" if engine.dialect.name == "sqlite" else engine.dialect.name
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return DatabaseHealth(healthy=True, type=db_type)
    except Exception as exc:
        return DatabaseHealth(healthy=False, type=db_type, error=str(exc))
