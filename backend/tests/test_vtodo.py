"""Tests for building and parsing VTODO payloads."""
from __future__ import annotations

from datetime import datetime

import pytest
from icalendar import Calendar

from backend.app.models import TaskPriority
from backend.app.utils.vtodo import TaskPayload, build_vtodo, parse_vtodo, priority_from_ical


def test_build_vtodo_maps_task_fields() -> None:
    payload = TaskPayload(
        title="Prepare discharge letter",
        notes="Room 204",
        due_date=datetime(2024, 5, 17, 14, 30),
        priority=TaskPriority.URGENT,
        is_completed=True,
    )

    calendar = build_vtodo("uid-1", payload, organizer="admin@hospital.example", sequence=2)

    (todo,) = calendar.walk("VTODO")
    assert str(todo["UID"]) == "uid-1"
    assert str(todo["SUMMARY"]) == "Prepare discharge letter"
    assert str(todo["DESCRIPTION"]) == "Room 204"
    assert todo["DUE"].dt == datetime(2024, 5, 17).date()
    assert int(todo["PRIORITY"]) == 1
    assert str(todo["STATUS"]) == "COMPLETED"
    assert int(todo["PERCENT-COMPLETE"]) == 100
    assert int(todo["SEQUENCE"]) == 2
    assert str(todo["ORGANIZER"]) == "mailto:admin@hospital.example"


def test_build_vtodo_omits_empty_optional_fields() -> None:
    calendar = build_vtodo("uid-2", TaskPayload(title="Call pharmacy"))

    (todo,) = calendar.walk("VTODO")
    assert "DESCRIPTION" not in todo
    assert "DUE" not in todo
    assert "ORGANIZER" not in todo
    assert str(todo["STATUS"]) == "NEEDS-ACTION"
    assert int(todo["PRIORITY"]) == 5


def test_parse_vtodo_reads_what_build_vtodo_writes() -> None:
    payload = TaskPayload(
        title="Order supplies",
        due_date=datetime(2024, 6, 1, 9, 0),
        priority=TaskPriority.LOW,
    )
    raw = build_vtodo("uid-3", payload, sequence=4).to_ical()

    (parsed,) = parse_vtodo(raw)

    assert parsed.uid == "uid-3"
    assert parsed.title == "Order supplies"
    assert parsed.due_date == datetime(2024, 6, 1, 0, 0)
    assert parsed.priority == TaskPriority.LOW
    assert parsed.is_completed is False
    assert parsed.sequence == 4


def test_parse_vtodo_skips_components_without_uid() -> None:
    payload = (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Zimbra//EN\r\n"
        "BEGIN:VTODO\r\n"
        "SUMMARY:No identifier\r\n"
        "END:VTODO\r\n"
        "BEGIN:VTODO\r\n"
        "UID:zimbra-1\r\n"
        "SUMMARY:Visit ward 3\r\n"
        "STATUS:COMPLETED\r\n"
        "PRIORITY:3\r\n"
        "END:VTODO\r\n"
        "END:VCALENDAR\r\n"
    )

    todos = parse_vtodo(payload)

    assert [todo.uid for todo in todos] == ["zimbra-1"]
    assert todos[0].is_completed is True
    assert todos[0].priority == TaskPriority.HIGH


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (1, TaskPriority.URGENT),
        (4, TaskPriority.HIGH),
        (5, TaskPriority.MEDIUM),
        (0, TaskPriority.MEDIUM),
        (9, TaskPriority.LOW),
        (None, TaskPriority.MEDIUM),
        ("bogus", TaskPriority.MEDIUM),
    ],
)
def test_priority_from_ical(value, expected) -> None:
    assert priority_from_ical(value) == expected


def test_build_vtodo_produces_a_parseable_calendar() -> None:
    raw = build_vtodo("uid-4", TaskPayload(title="X-ray review")).to_ical()

    calendar = Calendar.from_ical(raw)

    assert str(calendar["PRODID"]) == "-//NeoList//Task Sync//TR"
