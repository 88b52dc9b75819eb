"""
Reminder repository: validated, typed access to stored reminders.

Two interchangeable backends share one interface:

* ``JsonReminderRepository`` keeps every reminder in a flat JSON file
  (``<DATA_DIR>/reminders.json``).
* ``SqlReminderRepository`` keeps them in an embedded SQLite database through
  SQLAlchemy.

The scheduler relies on ``claim`` being a compare-and-set from ``pending`` to
``dispatching``: exactly one caller wins, which is what keeps delivery at most
once per occurrence.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

import pydantic
from sqlalchemy import delete, func, literal_column, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings as app_config
from app.db.json_store import JsonCollection, JsonFileStore
from app.db.session import build_engine, build_session_factory
from app.utils.timezone import parse_flexible_datetime, to_utc_naive, utc_now

from .errors import NotFoundError, StorageError, ValidationError
from .metrics import reminders_created_total
from .models import ReminderRecord
from .schemas import (
    NotificationMethod,
    NotificationStatus,
    RepeatSettings,
    Reminder,
    ReminderCreate,
    ReminderStats,
    ReminderUpdate,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

INTERRUPTED_DETAIL = "interrupted before completion"

_NOTIFICATION_TIME_ERROR = (
    'Invalid notification date time format. Expected format: "YYYY/M/D HH:MM" or ISO 8601'
)
_END_DATE_ERROR = 'Invalid repeat end date format. Expected format: "YYYY/M/D HH:MM" or ISO 8601'


@dataclass
class ReminderFilter:
    category: Optional[str] = None
    status: Optional[NotificationStatus] = None
    method: Optional[NotificationMethod] = None
    upcoming_hours: Optional[int] = None  # pending reminders due within the next N hours


def _flatten_validation_error(exc: pydantic.ValidationError) -> str:
    """Collapse pydantic's error list into one human readable line."""
    parts: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "Invalid value")
        if err.get("type") == "value_error":
            parts.append(msg.removeprefix("Value error, "))
        elif err.get("type") == "missing":
            parts.append(f"{loc} is required")
        else:
            parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid reminder"


def _pick(data: Dict[str, Any], camel: str, snake: str) -> Optional[str]:
    if camel in data:
        return camel
    if snake in data:
        return snake
    return None


def _coerce_timestamps(data: Any, tz_name: str) -> Dict[str, Any]:
    """
    Parse the user-facing timestamp fields in a request body.

    Both "YYYY/M/D HH:MM" and ISO 8601 are accepted; naive values are read in
    ``tz_name``. Anything else becomes a ValidationError with a fixed message.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    payload = dict(data)

    key = _pick(payload, "notificationDateTime", "notification_date_time")
    if key is not None and payload[key] is not None:
        try:
            payload[key] = parse_flexible_datetime(payload[key], tz_name)
        except (TypeError, ValueError) as exc:
            raise ValidationError(_NOTIFICATION_TIME_ERROR) from exc

    repeat_key = _pick(payload, "repeatSettings", "repeat_settings")
    if repeat_key is not None and isinstance(payload[repeat_key], dict):
        repeat = dict(payload[repeat_key])
        end_key = _pick(repeat, "endDate", "end_date")
        if end_key is not None and repeat[end_key] is not None:
            try:
                repeat[end_key] = parse_flexible_datetime(repeat[end_key], tz_name)
            except (TypeError, ValueError) as exc:
                raise ValidationError(_END_DATE_ERROR) from exc
        payload[repeat_key] = repeat
    return payload


class ReminderRepository(ABC):
    """Storage-agnostic reminder operations; backends supply the primitives."""

    backend_name = "abstract"

    def __init__(self, clock: Clock = utc_now, default_timezone: Optional[str] = None):
        self._clock = clock
        self.default_timezone = default_timezone or app_config.DEFAULT_TIMEZONE

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------
    @abstractmethod
    def _insert(self, reminder: Reminder) -> None: ...

    @abstractmethod
    def _get(self, reminder_id: str) -> Optional[Reminder]: ...

    @abstractmethod
    def _mutate(self, reminder_id: str, fn: Callable[[Reminder], Optional[Reminder]]) -> Optional[Reminder]:
        """Atomically replace a reminder with ``fn(reminder)``; None if missing or declined."""

    @abstractmethod
    def list(self, reminder_filter: Optional[ReminderFilter] = None) -> List[Reminder]: ...

    @abstractmethod
    def delete(self, reminder_id: str) -> bool: ...

    @abstractmethod
    def due(self, now: datetime, limit: int = 100) -> List[Reminder]:
        """Pending reminders with notification time <= now, oldest first."""

    @abstractmethod
    def has_successor(self, reminder_id: str) -> bool:
        """Whether an occurrence has already been spawned from this reminder."""

    @abstractmethod
    def recover_in_flight(self, detail: str = INTERRUPTED_DETAIL) -> List[Reminder]:
        """Mark reminders left in ``dispatching`` by a dead process as failed and return them."""

    @abstractmethod
    def count(self) -> int: ...

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def _timezone_for(self, data: Any, fallback: Optional[str] = None) -> str:
        tz_name = data.get("timezone") if isinstance(data, dict) else None
        if isinstance(tz_name, str) and tz_name:
            return tz_name
        return fallback or self.default_timezone

    def create(self, data: Dict[str, Any]) -> Reminder:
        payload = _coerce_timestamps(data, self._timezone_for(data))
        try:
            parsed = ReminderCreate.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(_flatten_validation_error(exc)) from exc

        now = self._clock()
        if parsed.notification_date_time <= now:
            raise ValidationError("Notification date time must be in the future")

        repeat = parsed.repeat_settings
        if repeat is not None:
            repeat = repeat.model_copy(update={"occurrence_count": 1})

        reminder = Reminder(
            id=uuid4().hex,
            title=parsed.title,
            message=parsed.message or "",
            url=parsed.url or "",
            notification_date_time=parsed.notification_date_time,
            notification_method=parsed.notification_method,
            notification_status=NotificationStatus.PENDING,
            category=parsed.category,
            tags=list(parsed.tags),
            timezone=parsed.timezone or self.default_timezone,
            repeat_settings=repeat,
            created_at=now,
            updated_at=now,
        )
        self._insert(reminder)
        reminders_created_total.inc()
        logger.info(
            f"Created reminder {reminder.id} ({reminder.notification_method.value}) "
            f"due {reminder.notification_date_time.isoformat()}"
        )
        return reminder

    def get(self, reminder_id: str) -> Reminder:
        reminder = self._get(reminder_id)
        if reminder is None:
            raise NotFoundError("Reminder not found")
        return reminder

    def update(self, reminder_id: str, data: Dict[str, Any]) -> Reminder:
        existing = self.get(reminder_id)
        payload = _coerce_timestamps(data, self._timezone_for(data, existing.timezone))
        try:
            changes = ReminderUpdate.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(_flatten_validation_error(exc)) from exc

        now = self._clock()
        updated = self._mutate(reminder_id, lambda current: self._apply_update(current, changes, now))
        if updated is None:
            raise NotFoundError("Reminder not found")
        logger.info(f"Updated reminder {reminder_id}: {sorted(changes.model_fields_set)}")
        return updated

    def _apply_update(self, current: Reminder, changes: ReminderUpdate, now: datetime) -> Reminder:
        values: Dict[str, Any] = {}
        for name in changes.model_fields_set:
            value = getattr(changes, name)
            if name in ("message", "url") and value is None:
                value = ""
            elif name == "tags" and value is None:
                value = []
            elif name == "timezone" and value is None:
                value = self.default_timezone
            elif name == "notification_status" and value is None:
                continue
            elif name == "repeat_settings" and value is not None and current.repeat_settings is not None:
                if "occurrence_count" not in value.model_fields_set:
                    value = value.model_copy(
                        update={"occurrence_count": current.repeat_settings.occurrence_count}
                    )
            values[name] = value

        if "notification_status" in values and current.notification_status == NotificationStatus.DISPATCHING:
            raise ValidationError("Cannot change status while the notification is being dispatched")

        candidate = current.model_copy(update={**values, "updated_at": now})
        repeat = candidate.repeat_settings
        if (
            "repeat_settings" in values
            and repeat is not None
            and repeat.end_date is not None
            and repeat.end_date <= candidate.notification_date_time
        ):
            raise ValidationError("Repeat end date must be after notification date")
        return candidate

    # ------------------------------------------------------------------
    # Scheduler operations
    # ------------------------------------------------------------------
    def claim(self, reminder_id: str) -> Optional[Reminder]:
        now = self._clock()

        def take(current: Reminder) -> Optional[Reminder]:
            if current.notification_status != NotificationStatus.PENDING:
                return None
            return current.model_copy(
                update={"notification_status": NotificationStatus.DISPATCHING, "updated_at": now}
            )

        return self._mutate(reminder_id, take)

    def complete(
        self,
        reminder_id: str,
        status: NotificationStatus,
        detail: Optional[str] = None,
        dispatched_at: Optional[datetime] = None,
    ) -> Optional[Reminder]:
        """Record the terminal outcome of a claimed reminder; None when it vanished meanwhile."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"complete() expects a terminal status, got {status}")
        now = self._clock()
        finished_at = dispatched_at or now

        def finish(current: Reminder) -> Optional[Reminder]:
            if current.notification_status != NotificationStatus.DISPATCHING:
                return None
            return current.model_copy(
                update={
                    "notification_status": status,
                    "dispatch_detail": detail,
                    "last_notification_date_time": finished_at,
                    "updated_at": now,
                }
            )

        return self._mutate(reminder_id, finish)

    def create_occurrence(self, reminder: Reminder) -> Reminder:
        """Store a successor occurrence built by the scheduler (no future-time check)."""
        self._insert(reminder)
        return reminder

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    def categories(self) -> List[str]:
        return sorted({r.category for r in self.list() if r.category})

    def tags(self) -> List[str]:
        return sorted({tag for r in self.list() for tag in r.tags if tag})

    def stats(self) -> ReminderStats:
        reminders = self.list()
        by_status = Counter(r.notification_status for r in reminders)
        by_method = {method.value: 0 for method in NotificationMethod}
        for reminder in reminders:
            by_method[reminder.notification_method.value] += 1
        return ReminderStats(
            total=len(reminders),
            pending=by_status[NotificationStatus.PENDING],
            dispatching=by_status[NotificationStatus.DISPATCHING],
            sent=by_status[NotificationStatus.SENT],
            failed=by_status[NotificationStatus.FAILED],
            notification_methods=by_method,
        )

    def _matches(self, reminder: Reminder, reminder_filter: ReminderFilter, now: datetime) -> bool:
        if reminder_filter.category and reminder.category != reminder_filter.category:
            return False
        if reminder_filter.status and reminder.notification_status != reminder_filter.status:
            return False
        if reminder_filter.method and reminder.notification_method != reminder_filter.method:
            return False
        if reminder_filter.upcoming_hours is not None:
            horizon = now + timedelta(hours=reminder_filter.upcoming_hours)
            if reminder.notification_status != NotificationStatus.PENDING:
                return False
            if not (now <= reminder.notification_date_time <= horizon):
                return False
        return True


class JsonReminderRepository(ReminderRepository):
    backend_name = "JSON File Storage"

    def __init__(self, collection: JsonCollection, clock: Clock = utc_now, default_timezone: Optional[str] = None):
        super().__init__(clock=clock, default_timezone=default_timezone)
        self.collection = collection

    @staticmethod
    def _load(record: Dict[str, Any]) -> Reminder:
        try:
            return Reminder.model_validate(record)
        except pydantic.ValidationError as exc:
            raise StorageError(f"Corrupt reminder record {record.get('id')}: {exc}") from exc

    def _insert(self, reminder: Reminder) -> None:
        self.collection.insert(reminder.to_record())

    def _get(self, reminder_id: str) -> Optional[Reminder]:
        record = self.collection.get(reminder_id)
        return self._load(record) if record is not None else None

    def _mutate(self, reminder_id: str, fn: Callable[[Reminder], Optional[Reminder]]) -> Optional[Reminder]:
        result: Dict[str, Reminder] = {}

        def apply(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            updated = fn(self._load(record))
            if updated is None:
                return None
            result["reminder"] = updated
            return updated.to_record()

        self.collection.mutate(reminder_id, apply)
        return result.get("reminder")

    def list(self, reminder_filter: Optional[ReminderFilter] = None) -> List[Reminder]:
        reminders = [self._load(record) for record in self.collection.all()]
        if reminder_filter is None:
            return reminders
        now = self._clock()
        return [r for r in reminders if self._matches(r, reminder_filter, now)]

    def delete(self, reminder_id: str) -> bool:
        return self.collection.delete(reminder_id)

    def due(self, now: datetime, limit: int = 100) -> List[Reminder]:
        pending = [
            r
            for r in self.list()
            if r.notification_status == NotificationStatus.PENDING and r.notification_date_time <= now
        ]
        pending.sort(key=lambda r: r.notification_date_time)
        return pending[:limit]

    def has_successor(self, reminder_id: str) -> bool:
        return any(record.get("parentReminderId") == reminder_id for record in self.collection.all())

    def recover_in_flight(self, detail: str = INTERRUPTED_DETAIL) -> List[Reminder]:
        now = self._clock()
        recovered: List[Reminder] = []

        def fail(record: Dict[str, Any]) -> Dict[str, Any]:
            reminder = self._load(record).model_copy(
                update={
                    "notification_status": NotificationStatus.FAILED,
                    "dispatch_detail": detail,
                    "last_notification_date_time": now,
                    "updated_at": now,
                }
            )
            recovered.append(reminder)
            return reminder.to_record()

        self.collection.mutate_where(
            lambda record: record.get("notificationStatus") == NotificationStatus.DISPATCHING.value,
            fail,
        )
        return recovered

    def count(self) -> int:
        return self.collection.count()


class SqlReminderRepository(ReminderRepository):
    backend_name = "SQLite"

    # SQLite has no explicit sequence on a string key; rowid preserves insertion order
    _insertion_order = literal_column("rowid")

    def __init__(self, session_factory: sessionmaker, clock: Clock = utc_now, default_timezone: Optional[str] = None):
        super().__init__(clock=clock, default_timezone=default_timezone)
        self._session_factory = session_factory
        # Serializes writers inside this process; conditional UPDATEs guard across processes
        self._write_lock = threading.RLock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Reminder database error: {exc}")
            raise StorageError(f"Database error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _to_values(reminder: Reminder) -> Dict[str, Any]:
        repeat = reminder.repeat_settings
        return {
            "id": reminder.id,
            "title": reminder.title,
            "message": reminder.message,
            "url": reminder.url,
            "notification_date_time": to_utc_naive(reminder.notification_date_time),
            "notification_method": reminder.notification_method.value,
            "notification_status": reminder.notification_status.value,
            "category": reminder.category,
            "tags": list(reminder.tags),
            "timezone": reminder.timezone,
            "repeat_settings": repeat.model_dump(mode="json", by_alias=True) if repeat else None,
            "last_notification_date_time": to_utc_naive(reminder.last_notification_date_time),
            "dispatch_detail": reminder.dispatch_detail,
            "parent_reminder_id": reminder.parent_reminder_id,
            "created_at": to_utc_naive(reminder.created_at),
            "updated_at": to_utc_naive(reminder.updated_at),
        }

    @staticmethod
    def _from_row(row: ReminderRecord) -> Reminder:
        try:
            return Reminder(
                id=row.id,
                title=row.title,
                message=row.message or "",
                url=row.url or "",
                notification_date_time=row.notification_date_time,
                notification_method=row.notification_method,
                notification_status=row.notification_status,
                category=row.category,
                tags=list(row.tags or []),
                timezone=row.timezone,
                repeat_settings=RepeatSettings.model_validate(row.repeat_settings) if row.repeat_settings else None,
                last_notification_date_time=row.last_notification_date_time,
                dispatch_detail=row.dispatch_detail,
                parent_reminder_id=row.parent_reminder_id,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
        except pydantic.ValidationError as exc:
            raise StorageError(f"Corrupt reminder row {row.id}: {exc}") from exc

    def _insert(self, reminder: Reminder) -> None:
        with self._write_lock, self._session() as session:
            session.add(ReminderRecord(**self._to_values(reminder)))

    def _get(self, reminder_id: str) -> Optional[Reminder]:
        with self._session() as session:
            row = session.get(ReminderRecord, reminder_id)
            return self._from_row(row) if row is not None else None

    def _mutate(self, reminder_id: str, fn: Callable[[Reminder], Optional[Reminder]]) -> Optional[Reminder]:
        with self._write_lock, self._session() as session:
            row = session.get(ReminderRecord, reminder_id)
            if row is None:
                return None
            updated = fn(self._from_row(row))
            if updated is None:
                return None
            for key, value in self._to_values(updated).items():
                setattr(row, key, value)
            return updated

    def list(self, reminder_filter: Optional[ReminderFilter] = None) -> List[Reminder]:
        stmt = select(ReminderRecord)
        if reminder_filter is not None:
            if reminder_filter.category:
                stmt = stmt.where(ReminderRecord.category == reminder_filter.category)
            if reminder_filter.status:
                stmt = stmt.where(ReminderRecord.notification_status == reminder_filter.status.value)
            if reminder_filter.method:
                stmt = stmt.where(ReminderRecord.notification_method == reminder_filter.method.value)
            if reminder_filter.upcoming_hours is not None:
                now = self._clock()
                horizon = now + timedelta(hours=reminder_filter.upcoming_hours)
                stmt = stmt.where(
                    ReminderRecord.notification_status == NotificationStatus.PENDING.value,
                    ReminderRecord.notification_date_time >= to_utc_naive(now),
                    ReminderRecord.notification_date_time <= to_utc_naive(horizon),
                )
        stmt = stmt.order_by(self._insertion_order)
        with self._session() as session:
            return [self._from_row(row) for row in session.execute(stmt).scalars()]

    def delete(self, reminder_id: str) -> bool:
        with self._write_lock, self._session() as session:
            result = session.execute(delete(ReminderRecord).where(ReminderRecord.id == reminder_id))
            return result.rowcount > 0

    def due(self, now: datetime, limit: int = 100) -> List[Reminder]:
        stmt = (
            select(ReminderRecord)
            .where(
                ReminderRecord.notification_status == NotificationStatus.PENDING.value,
                ReminderRecord.notification_date_time <= to_utc_naive(now),
            )
            .order_by(ReminderRecord.notification_date_time, self._insertion_order)
            .limit(limit)
        )
        with self._session() as session:
            return [self._from_row(row) for row in session.execute(stmt).scalars()]

    def claim(self, reminder_id: str) -> Optional[Reminder]:
        now = to_utc_naive(self._clock())
        with self._write_lock, self._session() as session:
            result = session.execute(
                update(ReminderRecord)
                .where(
                    ReminderRecord.id == reminder_id,
                    ReminderRecord.notification_status == NotificationStatus.PENDING.value,
                )
                .values(notification_status=NotificationStatus.DISPATCHING.value, updated_at=now)
            )
            if result.rowcount != 1:
                return None
            return self._from_row(session.get(ReminderRecord, reminder_id))

    def complete(
        self,
        reminder_id: str,
        status: NotificationStatus,
        detail: Optional[str] = None,
        dispatched_at: Optional[datetime] = None,
    ) -> Optional[Reminder]:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"complete() expects a terminal status, got {status}")
        now = self._clock()
        with self._write_lock, self._session() as session:
            result = session.execute(
                update(ReminderRecord)
                .where(
                    ReminderRecord.id == reminder_id,
                    ReminderRecord.notification_status == NotificationStatus.DISPATCHING.value,
                )
                .values(
                    notification_status=status.value,
                    dispatch_detail=detail,
                    last_notification_date_time=to_utc_naive(dispatched_at or now),
                    updated_at=to_utc_naive(now),
                )
            )
            if result.rowcount != 1:
                return None
            return self._from_row(session.get(ReminderRecord, reminder_id))

    def has_successor(self, reminder_id: str) -> bool:
        stmt = select(ReminderRecord.id).where(ReminderRecord.parent_reminder_id == reminder_id).limit(1)
        with self._session() as session:
            return session.scalar(stmt) is not None

    def recover_in_flight(self, detail: str = INTERRUPTED_DETAIL) -> List[Reminder]:
        now = to_utc_naive(self._clock())
        stmt = (
            select(ReminderRecord)
            .where(ReminderRecord.notification_status == NotificationStatus.DISPATCHING.value)
            .order_by(self._insertion_order)
        )
        with self._write_lock, self._session() as session:
            rows = session.execute(stmt).scalars().all()
            for row in rows:
                row.notification_status = NotificationStatus.FAILED.value
                row.dispatch_detail = detail
                row.last_notification_date_time = now
                row.updated_at = now
            return [self._from_row(row) for row in rows]

    def count(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(ReminderRecord)) or 0


def create_repository(app_settings, clock: Clock = utc_now) -> ReminderRepository:
    """Build the repository selected by STORAGE_BACKEND."""
    if app_settings.STORAGE_BACKEND == "sqlite":
        engine = build_engine(app_settings.SQLALCHEMY_DATABASE_URI)
        logger.info(f"Reminder storage: SQLite ({app_settings.SQLALCHEMY_DATABASE_URI})")
        return SqlReminderRepository(
            build_session_factory(engine), clock=clock, default_timezone=app_settings.DEFAULT_TIMEZONE
        )
    store = JsonFileStore(app_settings.DATA_DIR)
    logger.info(f"Reminder storage: JSON files in {app_settings.DATA_DIR}")
    return JsonReminderRepository(
        store.collection("reminders"), clock=clock, default_timezone=app_settings.DEFAULT_TIMEZONE
    )
