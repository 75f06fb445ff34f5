"""CalDAV adapter for the per-user Zimbra task folders."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from caldav import DAVClient
from caldav.lib.error import AuthorizationError, NotFoundError

from ..config import ZimbraSettings
from ..utils.vtodo import ParsedTodo, TaskPayload, build_vtodo, parse_vtodo

logger = logging.getLogger(__name__)


@dataclass
class CalDavSettings:
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    verify_ssl: bool = True
    timeout: float = 15.0


class AdapterErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    AUTH = "auth"
    TRANSIENT = "transient"


@dataclass
class AdapterResult:
    """Outcome of one remote task operation."""

    success: bool
    task_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[AdapterErrorKind] = None


CredentialProvider = Callable[[str], Tuple[Optional[str], Optional[str]]]
ClientFactory = Callable[[CalDavSettings], DAVClient]


def _default_connect(settings: CalDavSettings) -> DAVClient:
    logger.debug("Connecting to CalDAV endpoint %s", settings.url)
    return DAVClient(
        url=settings.url,
        username=settings.username,
        password=settings.password,
        timeout=settings.timeout,
        ssl_verify_cert=settings.verify_ssl,
    )


class ZimbraTaskClient:
    """Create, update and delete VTODOs in each user's Zimbra task folder.

    Remote failures never raise; callers receive an :class:`AdapterResult`.
    Authenticated clients are cached per email for a short window and are
    never shared between users.
    """

    def __init__(
        self,
        settings: ZimbraSettings,
        credentials: Optional[CredentialProvider] = None,
        *,
        connect: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._credentials = credentials or self._admin_credentials
        self._connect = connect or _default_connect
        self._clock = clock
        self._lock = threading.Lock()
        self._clients: Dict[str, Tuple[DAVClient, float]] = {}

    def _admin_credentials(self, email: str) -> Tuple[Optional[str], Optional[str]]:
        return self.settings.admin_email, self.settings.admin_password

    def _client_for(self, email: str) -> DAVClient:
        now = self._clock()
        with self._lock:
            cached = self._clients.get(email)
            if cached is not None and cached[1] > now:
                return cached[0]
        username, password = self._credentials(email)
        client = self._connect(
            CalDavSettings(
                url=self.settings.tasks_url(email),
                username=username,
                password=password,
                verify_ssl=self.settings.verify_ssl,
                timeout=self.settings.timeout_seconds,
            )
        )
        with self._lock:
            self._clients[email] = (client, now + self.settings.client_cache_seconds)
        return client

    def invalidate(self, email: str) -> None:
        with self._lock:
            self._clients.pop(email, None)

    def _tasks_calendar(self, email: str):
        client = self._client_for(email)
        return client.calendar(url=self.settings.tasks_url(email))

    def _failure(self, email: str, operation: str, exc: Exception) -> AdapterResult:
        if isinstance(exc, NotFoundError):
            kind = AdapterErrorKind.NOT_FOUND
        elif isinstance(exc, AuthorizationError):
            kind = AdapterErrorKind.AUTH
            self.invalidate(email)
        else:
            kind = AdapterErrorKind.TRANSIENT
        logger.warning("CalDAV %s for %s failed (%s): %s", operation, email, kind.value, exc)
        return AdapterResult(success=False, error=str(exc) or exc.__class__.__name__, error_kind=kind)

    def create_task(self, email: str, payload: TaskPayload) -> AdapterResult:
        uid = str(uuid.uuid4())
        ical = build_vtodo(uid, payload, organizer=self.settings.admin_email)
        try:
            calendar = self._tasks_calendar(email)
            calendar.save_todo(ical.to_ical().decode())
        except Exception as exc:
            return self._failure(email, "create", exc)
        logger.info("Created external task %s for %s", uid, email)
        return AdapterResult(success=True, task_id=uid)

    def update_task(self, email: str, external_id: str, payload: TaskPayload) -> AdapterResult:
        try:
            calendar = self._tasks_calendar(email)
            todo = calendar.todo_by_uid(external_id)
            current = parse_vtodo(todo.data)
            sequence = current[0].sequence + 1 if current else 1
            ical = build_vtodo(
                external_id, payload, organizer=self.settings.admin_email, sequence=sequence
            )
            todo.data = ical.to_ical().decode()
            todo.save()
        except Exception as exc:
            return self._failure(email, "update", exc)
        logger.info("Updated external task %s for %s", external_id, email)
        return AdapterResult(success=True, task_id=external_id)

    def delete_task(self, email: str, external_id: str) -> AdapterResult:
        try:
            calendar = self._tasks_calendar(email)
            todo = calendar.todo_by_uid(external_id)
            todo.delete()
        except NotFoundError:
            logger.info("External task %s for %s was already gone", external_id, email)
            return AdapterResult(success=True, task_id=external_id)
        except Exception as exc:
            return self._failure(email, "delete", exc)
        logger.info("Removed external task %s for %s", external_id, email)
        return AdapterResult(success=True, task_id=external_id)

    def list_tasks(self, email: str) -> Tuple[AdapterResult, List[ParsedTodo]]:
        """Return every VTODO stored in the user's task folder."""
        try:
            calendar = self._tasks_calendar(email)
            resources = calendar.todos(include_completed=True)
        except Exception as exc:
            return self._failure(email, "list", exc), []

        todos: List[ParsedTodo] = []
        for resource in resources:
            try:
                todos.extend(parse_vtodo(resource.data))
            except Exception:  # pragma: no cover - depends on server payloads
                logger.warning("Skipped unreadable VTODO in task folder of %s", email)
        return AdapterResult(success=True), todos
