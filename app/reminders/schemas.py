"""
Reminder schemas. Attributes are snake_case in Python and camelCase on the wire
and in the JSON store.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.utils.timezone import is_valid_timezone, to_utc_aware


class NotificationMethod(str, Enum):
    WEBHOOK = "webhook"
    EMAIL = "email"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"  # claimed by the scheduler, delivery in flight
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATUSES = (NotificationStatus.SENT, NotificationStatus.FAILED)


class RepeatInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RepeatSettings(CamelModel):
    """Recurrence rule and progress for a repeating reminder"""
    interval: RepeatInterval
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    occurrence_count: int = Field(default=1, ge=1)  # counted from 1
    cron_expression: Optional[str] = None  # only used with interval=custom

    @field_validator("end_date", mode="after")
    @classmethod
    def _utc_end_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_aware(v)

    @model_validator(mode="after")
    def _check_cron(self) -> "RepeatSettings":
        if self.interval == RepeatInterval.CUSTOM:
            if not self.cron_expression or not croniter.is_valid(self.cron_expression):
                raise ValueError("Custom repeat interval requires a valid cronExpression")
        return self


class Reminder(CamelModel):
    """Stored reminder occurrence"""
    id: str
    title: str
    message: str = ""
    url: str = ""
    notification_date_time: datetime
    notification_method: NotificationMethod = NotificationMethod.WEBHOOK
    notification_status: NotificationStatus = NotificationStatus.PENDING
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    timezone: str
    repeat_settings: Optional[RepeatSettings] = None
    last_notification_date_time: Optional[datetime] = None
    dispatch_detail: Optional[str] = None
    parent_reminder_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "notification_date_time",
        "last_notification_date_time",
        "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_aware(v)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _required_title(v: Any, message: str) -> Any:
    if v is None or (isinstance(v, str) and not v.strip()):
        raise ValueError(message)
    return v.strip() if isinstance(v, str) else v


def _check_timezone(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_timezone(v):
        raise ValueError(f"Unknown timezone: {v}")
    return v


class ReminderCreate(CamelModel):
    """Payload for creating a reminder"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: str
    message: Optional[str] = ""
    url: Optional[str] = ""
    notification_date_time: datetime
    notification_method: NotificationMethod = NotificationMethod.WEBHOOK
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    timezone: Optional[str] = None
    repeat_settings: Optional[RepeatSettings] = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v: Any) -> Any:
        return _required_title(v, "Title is required")

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_timezone(v)

    @model_validator(mode="after")
    def _check_end_date(self) -> "ReminderCreate":
        repeat = self.repeat_settings
        if repeat and repeat.end_date and repeat.end_date <= to_utc_aware(self.notification_date_time):
            raise ValueError("Repeat end date must be after notification date")
        return self


class ReminderUpdate(CamelModel):
    """Partial update; only fields present in the payload are applied"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    message: Optional[str] = None
    url: Optional[str] = None
    notification_date_time: Optional[datetime] = None
    notification_method: Optional[NotificationMethod] = None
    notification_status: Optional[NotificationStatus] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    timezone: Optional[str] = None
    repeat_settings: Optional[RepeatSettings] = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v: Any) -> Any:
        return _required_title(v, "Title cannot be empty")

    @field_validator("notification_date_time", "notification_method", mode="before")
    @classmethod
    def _not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("Field cannot be null")
        return v

    @field_validator("notification_status")
    @classmethod
    def _status(cls, v: Optional[NotificationStatus]) -> Optional[NotificationStatus]:
        if v == NotificationStatus.DISPATCHING:
            raise ValueError("Notification status must be one of: pending, sent, failed")
        return v

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_timezone(v)


class ReminderStats(CamelModel):
    total: int
    pending: int
    dispatching: int
    sent: int
    failed: int
    notification_methods: Dict[str, int]


class TestNotificationResponse(CamelModel):
    success: bool
    message: str
    detail: Optional[str] = None
