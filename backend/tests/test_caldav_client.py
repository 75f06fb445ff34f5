from __future__ import annotations

from typing import Dict, List, Optional

from caldav import DAVClient
from caldav.lib.error import AuthorizationError, NotFoundError

from backend.app.config import ZimbraSettings
from backend.app.services import caldav_client
from backend.app.services.caldav_client import AdapterErrorKind, ZimbraTaskClient
from backend.app.utils.vtodo import TaskPayload, build_vtodo, parse_vtodo

SETTINGS = ZimbraSettings(
    dav_url="https://mail.hospital.example/",
    admin_email="admin@hospital.example",
    admin_password="secret",
    client_cache_seconds=300,
)


class _FakeTodo:
    def __init__(self, calendar: "_FakeCalendar", uid: str, data: str) -> None:
        self._calendar = calendar
        self.uid = uid
        self.data = data
        self.saves = 0

    def save(self) -> None:
        self.saves += 1
        self._calendar.todos_by_uid[self.uid] = self

    def delete(self) -> None:
        self._calendar.todos_by_uid.pop(self.uid)


class _FakeCalendar:
    def __init__(self) -> None:
        self.todos_by_uid: Dict[str, _FakeTodo] = {}
        self.error: Optional[Exception] = None

    def save_todo(self, ical: str) -> None:
        if self.error is not None:
            raise self.error
        (parsed,) = parse_vtodo(ical)
        self.todos_by_uid[parsed.uid] = _FakeTodo(self, parsed.uid, ical)

    def todo_by_uid(self, uid: str) -> _FakeTodo:
        if self.error is not None:
            raise self.error
        try:
            return self.todos_by_uid[uid]
        except KeyError:
            raise NotFoundError(uid)

    def todos(self, include_completed: bool = False) -> List[_FakeTodo]:
        return list(self.todos_by_uid.values())


class _FakeDavClient:
    def __init__(self, settings: caldav_client.CalDavSettings, calendars: Dict[str, _FakeCalendar]) -> None:
        self.settings = settings
        self._calendars = calendars

    def calendar(self, url: str) -> _FakeCalendar:
        return self._calendars.setdefault(url, _FakeCalendar())


class _Connector:
    def __init__(self) -> None:
        self.calendars: Dict[str, _FakeCalendar] = {}
        self.opened: List[caldav_client.CalDavSettings] = []

    def __call__(self, settings: caldav_client.CalDavSettings) -> _FakeDavClient:
        self.opened.append(settings)
        return _FakeDavClient(settings, self.calendars)

    def calendar_for(self, email: str) -> _FakeCalendar:
        return self.calendars.setdefault(SETTINGS.tasks_url(email), _FakeCalendar())


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _client(connector: _Connector, clock: Optional[_Clock] = None) -> ZimbraTaskClient:
    return ZimbraTaskClient(SETTINGS, connect=connector, clock=clock or _Clock())


def test_tasks_url_points_at_user_task_folder() -> None:
    assert SETTINGS.tasks_url("nurse@hospital.example") == (
        "https://mail.hospital.example/dav/nurse@hospital.example/Tasks/"
    )


def test_create_update_and_delete_round_trip() -> None:
    connector = _Connector()
    client = _client(connector)

    created = client.create_task("nurse@hospital.example", TaskPayload(title="Check drip"))
    assert created.success and created.task_id

    calendar = connector.calendar_for("nurse@hospital.example")
    updated = client.update_task(
        "nurse@hospital.example", created.task_id, TaskPayload(title="Check drip twice")
    )
    assert updated.success
    (parsed,) = parse_vtodo(calendar.todos_by_uid[created.task_id].data)
    assert parsed.title == "Check drip twice"
    assert parsed.sequence == 1

    deleted = client.delete_task("nurse@hospital.example", created.task_id)
    assert deleted.success
    assert calendar.todos_by_uid == {}


def test_clients_are_cached_per_email_until_expiry() -> None:
    connector = _Connector()
    clock = _Clock()
    client = _client(connector, clock)

    client.create_task("a@hospital.example", TaskPayload(title="One"))
    client.create_task("a@hospital.example", TaskPayload(title="Two"))
    client.create_task("b@hospital.example", TaskPayload(title="Three"))
    assert [settings.url for settings in connector.opened] == [
        SETTINGS.tasks_url("a@hospital.example"),
        SETTINGS.tasks_url("b@hospital.example"),
    ]

    clock.now += 301
    client.create_task("a@hospital.example", TaskPayload(title="Four"))
    assert len(connector.opened) == 3


def test_default_credentials_are_the_admin_account() -> None:
    connector = _Connector()
    client = _client(connector)

    client.create_task("a@hospital.example", TaskPayload(title="One"))

    assert connector.opened[0].username == "admin@hospital.example"
    assert connector.opened[0].password == "secret"


def test_update_of_missing_task_reports_not_found() -> None:
    client = _client(_Connector())

    result = client.update_task("a@hospital.example", "missing", TaskPayload(title="x"))

    assert not result.success
    assert result.error_kind == AdapterErrorKind.NOT_FOUND


def test_delete_of_missing_task_counts_as_success() -> None:
    client = _client(_Connector())

    result = client.delete_task("a@hospital.example", "missing")

    assert result.success


def test_authorization_error_drops_cached_client() -> None:
    connector = _Connector()
    client = _client(connector)
    client.create_task("a@hospital.example", TaskPayload(title="One"))
    connector.calendar_for("a@hospital.example").error = AuthorizationError("denied")

    result = client.create_task("a@hospital.example", TaskPayload(title="Two"))

    assert not result.success
    assert result.error_kind == AdapterErrorKind.AUTH
    connector.calendar_for("a@hospital.example").error = None
    client.create_task("a@hospital.example", TaskPayload(title="Three"))
    assert len(connector.opened) == 2


def test_unexpected_errors_are_transient() -> None:
    connector = _Connector()
    client = _client(connector)
    connector.calendar_for("a@hospital.example").error = ConnectionError("reset by peer")

    result = client.create_task("a@hospital.example", TaskPayload(title="One"))

    assert not result.success
    assert result.error_kind == AdapterErrorKind.TRANSIENT
    assert result.error == "reset by peer"


def test_list_tasks_parses_every_vtodo() -> None:
    connector = _Connector()
    client = _client(connector)
    calendar = connector.calendar_for("a@hospital.example")
    for uid in ("z-1", "z-2"):
        calendar.save_todo(build_vtodo(uid, TaskPayload(title=f"Task {uid}")).to_ical().decode())

    result, todos = client.list_tasks("a@hospital.example")

    assert result.success
    assert sorted(todo.uid for todo in todos) == ["z-1", "z-2"]


def test_default_connector_builds_client_with_finite_timeout() -> None:
    dav = caldav_client._default_connect(
        caldav_client.CalDavSettings(
            url=SETTINGS.tasks_url("a@hospital.example"),
            username="a@hospital.example",
            password="pw",
            timeout=7.0,
        )
    )

    assert isinstance(dav, DAVClient)
    assert dav.timeout == 7.0
    assert "mail.hospital.example" in str(dav.url)
