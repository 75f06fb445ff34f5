"""Helpers to build and parse VTODO payloads for the external task store."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import List, Optional

from icalendar import Calendar, Todo
from pydantic import BaseModel

from ..models import TaskPriority

logger = logging.getLogger(__name__)

PRODID = "-//NeoList//Task Sync//TR"

PRIORITY_TO_ICAL = {
    TaskPriority.URGENT: 1,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 5,
    TaskPriority.LOW: 9,
}


class TaskPayload(BaseModel):
    """Snapshot of the task fields mirrored into the external store."""

    title: str
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    is_completed: bool = False


class ParsedTodo(BaseModel):
    uid: str
    title: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    is_completed: bool = False
    sequence: int = 0


def priority_from_ical(value) -> TaskPriority:
    """Map an RFC 5545 priority (1 highest, 9 lowest, 0 undefined) to ours."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return TaskPriority.MEDIUM
    if 1 <= number <= 2:
        return TaskPriority.URGENT
    if 3 <= number <= 4:
        return TaskPriority.HIGH
    if 7 <= number <= 9:
        return TaskPriority.LOW
    return TaskPriority.MEDIUM


def build_vtodo(
    uid: str,
    payload: TaskPayload,
    *,
    organizer: Optional[str] = None,
    sequence: int = 0,
) -> Calendar:
    """Render ``payload`` as a calendar holding a single VTODO."""
    now = datetime.now(tz=timezone.utc)
    calendar = Calendar()
    calendar.add("PRODID", PRODID)
    calendar.add("VERSION", "2.0")

    todo = Todo()
    todo.add("UID", uid)
    todo.add("DTSTAMP", now)
    todo.add("SUMMARY", payload.title)
    if payload.notes:
        todo.add("DESCRIPTION", payload.notes)
    if payload.due_date is not None:
        # Zimbra shows task due dates without a time component.
        todo.add("DUE", payload.due_date.date())
    todo.add("PRIORITY", PRIORITY_TO_ICAL.get(payload.priority, 5))
    todo.add("STATUS", "COMPLETED" if payload.is_completed else "NEEDS-ACTION")
    todo.add("PERCENT-COMPLETE", 100 if payload.is_completed else 0)
    todo.add("SEQUENCE", sequence)
    todo.add("LAST-MODIFIED", now)
    if organizer:
        todo.add("ORGANIZER", f"mailto:{organizer}")
    calendar.add_component(todo)
    return calendar


def parse_vtodo(data: bytes | str) -> List[ParsedTodo]:
    """Extract the VTODO components of an iCalendar payload."""
    raw = data.encode() if isinstance(data, str) else data
    calendar = Calendar.from_ical(raw)
    todos: List[ParsedTodo] = []
    for component in calendar.walk("VTODO"):
        uid = component.get("UID")
        if not uid:
            logger.warning("Skipping VTODO without UID")
            continue
        due = component.get("DUE")
        status = str(component.get("STATUS") or "NEEDS-ACTION").upper()
        summary = component.get("SUMMARY")
        description = component.get("DESCRIPTION")
        try:
            sequence = int(component.get("SEQUENCE") or 0)
        except (TypeError, ValueError):
            sequence = 0
        todos.append(
            ParsedTodo(
                uid=str(uid),
                title=str(summary) if summary else None,
                notes=str(description) if description else None,
                due_date=_normalize_date(due.dt) if due else None,
                priority=priority_from_ical(component.get("PRIORITY")),
                is_completed=status == "COMPLETED",
                sequence=sequence,
            )
        )
    logger.debug("Parsed %s tasks from VTODO payload", len(todos))
    return todos


def _normalize_date(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise TypeError(f"Unsupported date value: {value!r}")
