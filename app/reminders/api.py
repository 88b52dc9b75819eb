from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response

from app.api.deps import get_dispatcher, get_repository, get_scheduler
from .dispatcher import NotificationDispatcher
from .errors import NotFoundError, ValidationError
from .repository import ReminderFilter, ReminderRepository
from .scheduler import ReminderScheduler
from .schemas import NotificationMethod, NotificationStatus, Reminder, TestNotificationResponse


router = APIRouter()


def _parse_status(value: Optional[str]) -> Optional[NotificationStatus]:
    if value is None:
        return None
    try:
        return NotificationStatus(value)
    except ValueError:
        raise ValidationError("Invalid status. Must be one of: pending, dispatching, sent, failed")


def _parse_method(value: Optional[str]) -> Optional[NotificationMethod]:
    if value is None:
        return None
    try:
        return NotificationMethod(value)
    except ValueError:
        raise ValidationError("Invalid notification method. Must be webhook or email")


# /meta and /test routes are declared before /{reminder_id}
@router.get("/meta/categories", response_model=List[str])
def list_categories_endpoint(repository: ReminderRepository = Depends(get_repository)):
    return repository.categories()


@router.get("/meta/tags", response_model=List[str])
def list_tags_endpoint(repository: ReminderRepository = Depends(get_repository)):
    return repository.tags()


@router.get("/meta/stats")
def reminder_stats_endpoint(
    repository: ReminderRepository = Depends(get_repository),
    scheduler: ReminderScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    stats = repository.stats().model_dump(by_alias=True)
    stats["scheduler"] = scheduler.status()
    return stats


@router.post("/test/{method}", response_model=TestNotificationResponse)
def test_notification_endpoint(method: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    """Send a synthetic notification through the given method."""
    notification_method = _parse_method(method)
    result = dispatcher.send_test(notification_method)
    message = (
        f"Test {notification_method.value} notification sent successfully"
        if result.ok
        else f"Failed to send test {notification_method.value} notification"
    )
    return TestNotificationResponse(success=result.ok, message=message, detail=result.detail)


@router.get("", response_model=List[Reminder])
def list_reminders_endpoint(
    status: Optional[str] = None,
    category: Optional[str] = None,
    notification_method: Optional[str] = Query(None, alias="notificationMethod"),
    method: Optional[str] = None,
    upcoming: Optional[int] = Query(None, ge=1, description="Pending reminders due within N hours"),
    repository: ReminderRepository = Depends(get_repository),
):
    reminder_filter = ReminderFilter(
        category=category,
        status=_parse_status(status),
        method=_parse_method(notification_method or method),
        upcoming_hours=upcoming,
    )
    return repository.list(reminder_filter)


@router.post("", response_model=Reminder, status_code=201)
def create_reminder_endpoint(
    payload: Any = Body(None),
    repository: ReminderRepository = Depends(get_repository),
):
    return repository.create(payload)


@router.get("/{reminder_id}", response_model=Reminder)
def get_reminder_endpoint(reminder_id: str, repository: ReminderRepository = Depends(get_repository)):
    return repository.get(reminder_id)


@router.put("/{reminder_id}", response_model=Reminder)
def update_reminder_endpoint(
    reminder_id: str,
    payload: Any = Body(None),
    repository: ReminderRepository = Depends(get_repository),
):
    """Partial update; fields missing from the body are left unchanged."""
    return repository.update(reminder_id, payload)


@router.delete("/{reminder_id}", status_code=204)
def delete_reminder_endpoint(reminder_id: str, repository: ReminderRepository = Depends(get_repository)):
    if not repository.delete(reminder_id):
        raise NotFoundError("Reminder not found")
    return Response(status_code=204)
