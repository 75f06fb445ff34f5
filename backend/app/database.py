"""Database configuration module."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

SQLALCHEMY_DATABASE_URL = get_settings().database_url

logger = logging.getLogger(__name__)


def _build_engine(url: str):
    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = _build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@event.listens_for(Session, "after_begin")
def _apply_security_context(session: Session, transaction, connection) -> None:
    """Tag Oracle transactions with the acting user so VPD policies apply."""

    acting_user_id = session.info.get("acting_user_id")
    if not acting_user_id or connection.dialect.name != "oracle":
        return
    procedure = get_settings().vpd_procedure
    connection.execute(text(f"BEGIN {procedure}(:user_id); END;"), {"user_id": acting_user_id})


def open_session(acting_user_id: Optional[str] = None) -> Session:
    """Return a session scoped to ``acting_user_id``.

    Sessions without an acting user bypass row-level security and are reserved
    for admin-verified paths and the queue worker.
    """

    session = SessionLocal()
    if acting_user_id:
        session.info["acting_user_id"] = acting_user_id
    return session


_UPGRADE_COLUMNS: dict[str, dict[str, str]] = {
    "task_assignees": {
        "external_task_id": "ALTER TABLE task_assignees ADD external_task_id VARCHAR(255) NULL",
    },
    "profiles": {
        "sync_enabled": "ALTER TABLE profiles ADD sync_enabled BOOLEAN DEFAULT 0 NOT NULL",
        "caldav_password": "ALTER TABLE profiles ADD caldav_password TEXT NULL",
    },
    "sync_queue": {
        "attempt": "ALTER TABLE sync_queue ADD attempt INTEGER DEFAULT 1 NOT NULL",
        "retry_of": "ALTER TABLE sync_queue ADD retry_of VARCHAR(32) NULL",
        "claimed_by": "ALTER TABLE sync_queue ADD claimed_by VARCHAR(128) NULL",
        "claimed_at": "ALTER TABLE sync_queue ADD claimed_at TIMESTAMP NULL",
        "processed_at": "ALTER TABLE sync_queue ADD processed_at TIMESTAMP NULL",
        "error_message": "ALTER TABLE sync_queue ADD error_message TEXT NULL",
    },
}


def apply_schema_upgrades() -> None:
    """Add columns introduced after the first deployment to existing tables."""

    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, new_columns in _UPGRADE_COLUMNS.items():
        if table_name not in existing_tables:
            # Table does not exist yet; metadata.create_all will create it complete.
            continue
        columns = {column["name"].lower() for column in inspector.get_columns(table_name)}
        for column_name, ddl in new_columns.items():
            if column_name in columns:
                continue
            logger.info("Adding %s column to %s table", column_name, table_name)
            with engine.begin() as connection:
                connection.exec_driver_sql(ddl)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
