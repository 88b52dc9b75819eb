"""
SQLAlchemy model for the embedded-database reminder backend
"""
from sqlalchemy import Column, String, DateTime, Index, JSON

from app.db.base import Base


class ReminderRecord(Base):
    """One reminder occurrence; recurring reminders get one row per occurrence.

    Timestamps are stored as naive UTC.
    """
    __tablename__ = "reminders"

    id = Column(String(64), primary_key=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False, default="")
    url = Column(String, nullable=False, default="")
    notification_date_time = Column(DateTime(), nullable=False, index=True)
    notification_method = Column(String(16), nullable=False, default="webhook")
    notification_status = Column(String(16), nullable=False, default="pending")
    category = Column(String, nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    timezone = Column(String(64), nullable=False)
    repeat_settings = Column(JSON, nullable=True)  # camelCase dict, same shape as the JSON store
    last_notification_date_time = Column(DateTime(), nullable=True)
    dispatch_detail = Column(String, nullable=True)
    parent_reminder_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(), nullable=False)
    updated_at = Column(DateTime(), nullable=False)

    __table_args__ = (
        Index("ix_reminders_status_time", "notification_status", "notification_date_time"),
        Index("ix_reminders_parent_id", "parent_reminder_id"),
    )
