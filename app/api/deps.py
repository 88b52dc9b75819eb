from fastapi import Request

from app.reminders.dispatcher import NotificationDispatcher
from app.reminders.repository import ReminderRepository
from app.reminders.scheduler import ReminderScheduler


def get_repository(request: Request) -> ReminderRepository:
    return request.app.state.reminder_repository


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.notification_dispatcher


def get_scheduler(request: Request) -> ReminderScheduler:
    return request.app.state.reminder_scheduler
