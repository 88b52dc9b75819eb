from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.db.json_store import JsonFileStore
from app.db.session import build_engine, build_session_factory
from app.reminders.config import ReminderSettings
from app.reminders.dispatcher import NotificationDispatcher
from app.reminders.repository import JsonReminderRepository, SqlReminderRepository
from app.reminders.schemas import NotificationMethod, NotificationStatus, RepeatSettings, Reminder
from app.services.email_service import MailMessage, MailSender


NOW = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
WEBHOOK_URL = "https://hooks.test/reminder"


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailSender(MailSender):
    def __init__(self):
        self.sent: List[MailMessage] = []
        self.error: Optional[Exception] = None

    def send(self, message: MailMessage) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(message)
        return f"<msg-{len(self.sent)}@test>"


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code


class FakeHttpSession:
    """Records POSTs instead of sending them."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def post(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def app_settings(data_dir) -> Settings:
    return Settings(DATA_DIR=str(data_dir), STORAGE_BACKEND="json", _env_file=None)


@pytest.fixture
def reminder_settings() -> ReminderSettings:
    return ReminderSettings(
        SCHEDULER_ENABLED=False,
        DISPATCH_WORKERS=1,
        WEBHOOK_URL=WEBHOOK_URL,
        EMAIL_TO="me@example.com",
        _env_file=None,
    )


@pytest.fixture
def json_repository(data_dir, clock) -> JsonReminderRepository:
    store = JsonFileStore(data_dir)
    return JsonReminderRepository(store.collection("reminders"), clock=clock, default_timezone="Asia/Tokyo")


@pytest.fixture
def sqlite_repository(data_dir, clock):
    engine = build_engine(f"sqlite:///{(data_dir / 'reminders.db').as_posix()}")
    yield SqlReminderRepository(build_session_factory(engine), clock=clock, default_timezone="Asia/Tokyo")
    engine.dispose()


@pytest.fixture(params=["json", "sqlite"])
def repository(request):
    return request.getfixturevalue(f"{request.param}_repository")


@pytest.fixture
def mail_sender() -> FakeMailSender:
    return FakeMailSender()


@pytest.fixture
def http() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
def dispatcher(reminder_settings, mail_sender, http, clock) -> NotificationDispatcher:
    return NotificationDispatcher(reminder_settings, mail_sender=mail_sender, http=http, clock=clock)


@pytest.fixture
def make_reminder():
    """Build an in-memory Reminder with sensible defaults."""

    def _make(**overrides) -> Reminder:
        repeat = overrides.pop("repeat", None)
        values = {
            "id": uuid4().hex,
            "title": "Stand-up",
            "message": "Daily sync",
            "url": "",
            "notification_date_time": NOW + timedelta(hours=1),
            "notification_method": NotificationMethod.WEBHOOK,
            "notification_status": NotificationStatus.PENDING,
            "category": None,
            "tags": [],
            "timezone": "Asia/Tokyo",
            "repeat_settings": RepeatSettings(**repeat) if repeat else None,
            "created_at": NOW,
            "updated_at": NOW,
        }
        values.update(overrides)
        return Reminder(**values)

    return _make


@pytest.fixture
def client(app_settings, reminder_settings, json_repository, dispatcher, clock):
    from app.main import create_app

    app = create_app(
        app_settings,
        reminder_settings,
        repository=json_repository,
        dispatcher=dispatcher,
        clock=clock,
    )
    with TestClient(app) as test_client:
        yield test_client
