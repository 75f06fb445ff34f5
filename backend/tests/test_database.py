"""Tests for schema upgrade helpers and session scoping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from backend.app import database
from backend.app.models import Profile, utcnow


def test_apply_schema_upgrades_adds_sync_columns(tmp_path) -> None:
    """Tables created before task sync existed gain the link and queue columns."""

    db_path = tmp_path / "upgrade.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )

    original_engine = database.engine
    original_session_local = database.SessionLocal

    database.engine = test_engine
    database.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

    try:
        with test_engine.begin() as connection:
            connection.exec_driver_sql(
                """
                CREATE TABLE task_assignees (
                    task_id VARCHAR(32) NOT NULL,
                    user_id VARCHAR(32) NOT NULL,
                    is_completed BOOLEAN NOT NULL DEFAULT 0,
                    assigned_at DATETIME,
                    PRIMARY KEY (task_id, user_id)
                )
                """
            )
            connection.exec_driver_sql(
                """
                CREATE TABLE sync_queue (
                    id VARCHAR(32) PRIMARY KEY,
                    task_id VARCHAR(32) NOT NULL,
                    user_email VARCHAR(255) NOT NULL,
                    action_type VARCHAR(6) NOT NULL,
                    payload JSON NOT NULL,
                    status VARCHAR(11) NOT NULL,
                    created_at DATETIME NOT NULL
                )
                """
            )
            connection.exec_driver_sql(
                """
                INSERT INTO task_assignees (task_id, user_id, is_completed)
                VALUES ('task-1', 'user-1', 0)
                """
            )

        database.apply_schema_upgrades()

        columns = {column["name"] for column in inspect(test_engine).get_columns("task_assignees")}
        assert "external_task_id" in columns
        queue_columns = {column["name"] for column in inspect(test_engine).get_columns("sync_queue")}
        assert {"attempt", "retry_of", "claimed_by", "claimed_at", "processed_at", "error_message"} <= queue_columns

        with test_engine.begin() as connection:
            external_id = connection.exec_driver_sql(
                "SELECT external_task_id FROM task_assignees WHERE task_id = 'task-1'"
            ).scalar_one()
        assert external_id is None

        # A second run finds nothing left to add.
        database.apply_schema_upgrades()
    finally:
        test_engine.dispose()
        database.engine = original_engine
        database.SessionLocal = original_session_local


def test_open_session_records_acting_user() -> None:
    session = database.open_session("user-1")
    try:
        assert session.info["acting_user_id"] == "user-1"
    finally:
        session.close()

    anonymous = database.open_session()
    try:
        assert "acting_user_id" not in anonymous.info
    finally:
        anonymous.close()


def test_session_scope_rolls_back_on_error() -> None:
    with pytest.raises(RuntimeError):
        with database.session_scope() as session:
            session.add(Profile(id="rolled-back", email="rb@hospital.example"))
            session.flush()
            raise RuntimeError("abort")

    with database.session_scope() as session:
        assert session.get(Profile, "rolled-back") is None


def test_utcnow_is_naive_utc() -> None:
    stamp = utcnow()

    assert stamp.tzinfo is None
    assert abs(stamp - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
