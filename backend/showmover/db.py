# backend/showmover/db.py
import logging
import os
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session
from fastapi import Request

from . import models  # noqa: F401  registers the tables on SQLModel.metadata

logger = logging.getLogger(__name__)


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def make_engine(db_path: str) -> Engine:
    db_path = os.path.abspath(db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    logger.info("Opening SQLite database at %s", db_path)

    # file-based sqlite, shared by the API threadpool and the worker thread
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def init_db(engine: Engine):
    SQLModel.metadata.tables["shows"].create(engine, checkfirst=True)
    deduplicate_show_paths(engine)
    SQLModel.metadata.create_all(engine)
    with engine.begin() as conn:
        # legacy databases may predate the UNIQUE column constraint
        conn.execute(text("CREATE UNIQUE INDEX IF NOT EXISTS ux_shows_path ON shows(path)"))
    logger.info("SQLite database initialized")


def deduplicate_show_paths(engine: Engine) -> int:
    """Keep only the newest row (highest id) for every duplicated show path."""
    removed = 0
    with engine.begin() as conn:
        duplicates = conn.execute(
            text("SELECT path FROM shows GROUP BY path HAVING COUNT(*) > 1")
        ).scalars().all()
        for path in duplicates:
            logger.warning("Duplicate show entries detected for %s; retaining latest record", path)
            result = conn.execute(
                text(
                    "DELETE FROM shows WHERE path = :path "
                    "AND id NOT IN (SELECT MAX(id) FROM shows WHERE path = :path)"
                ),
                {"path": path},
            )
            removed += result.rowcount or 0
    return removed


def get_session(request: Request):
    with Session(request.app.state.engine) as session:
        yield session
