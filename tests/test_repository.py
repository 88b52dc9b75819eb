import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.reminders.errors import NotFoundError, ValidationError
from app.reminders.repository import ReminderFilter
from app.reminders.schemas import NotificationMethod, NotificationStatus

from .conftest import NOW


UTC = timezone.utc


def payload(**overrides):
    data = {
        "title": "Pay rent",
        "message": "Transfer before noon",
        "notificationDateTime": (NOW + timedelta(hours=2)).isoformat(),
        "notificationMethod": "webhook",
    }
    data.update(overrides)
    return data


def test_create_assigns_server_fields(repository):
    reminder = repository.create(payload(title="  Pay rent  ", tags=["home", "money"], category="bills"))

    assert reminder.id
    assert reminder.title == "Pay rent"
    assert reminder.notification_status == NotificationStatus.PENDING
    assert reminder.notification_date_time == NOW + timedelta(hours=2)
    assert reminder.timezone == "Asia/Tokyo"
    assert reminder.tags == ["home", "money"]
    assert reminder.created_at == NOW
    assert repository.get(reminder.id).model_dump() == reminder.model_dump()


def test_create_defaults_to_webhook_and_empty_strings(repository):
    data = payload()
    del data["notificationMethod"]
    del data["message"]
    reminder = repository.create(data)
    assert reminder.notification_method == NotificationMethod.WEBHOOK
    assert reminder.message == ""
    assert reminder.url == ""
    assert reminder.tags == []


def test_create_reads_slash_format_in_reminder_timezone(repository):
    reminder = repository.create(payload(notificationDateTime="2025/1/16 9:00", timezone="Asia/Tokyo"))
    assert reminder.notification_date_time == datetime(2025, 1, 16, 0, 0, tzinfo=UTC)

    reminder = repository.create(payload(notificationDateTime="2025/1/16 9:00", timezone="UTC"))
    assert reminder.notification_date_time == datetime(2025, 1, 16, 9, 0, tzinfo=UTC)


def test_create_forces_occurrence_count_to_one(repository):
    reminder = repository.create(payload(repeatSettings={"interval": "daily", "occurrenceCount": 5}))
    assert reminder.repeat_settings.occurrence_count == 1


@pytest.mark.parametrize("when", [NOW, NOW - timedelta(minutes=1)])
def test_create_rejects_times_not_in_future(repository, when):
    with pytest.raises(ValidationError, match="must be in the future"):
        repository.create(payload(notificationDateTime=when.isoformat()))
    assert repository.count() == 0


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"title": "   "}, "Title is required"),
        ({"notificationDateTime": "next tuesday"}, "Invalid notification date time format"),
        ({"notificationMethod": "sms"}, "notificationMethod"),
        ({"repeatSettings": {"interval": "hourly"}}, "repeatSettings.interval"),
        ({"repeatSettings": {"interval": "custom"}}, "cronExpression"),
        ({"repeatSettings": {"interval": "daily", "maxOccurrences": 0}}, "maxOccurrences"),
        ({"timezone": "Mars/Olympus"}, "Unknown timezone"),
        ({"tags": "home"}, "tags"),
    ],
)
def test_create_validation_errors(repository, overrides, message):
    with pytest.raises(ValidationError, match=message):
        repository.create(payload(**overrides))


def test_create_requires_title(repository):
    data = payload()
    del data["title"]
    with pytest.raises(ValidationError, match="title is required"):
        repository.create(data)


def test_create_rejects_end_date_before_start(repository):
    with pytest.raises(ValidationError, match="Repeat end date must be after notification date"):
        repository.create(
            payload(repeatSettings={"interval": "daily", "endDate": (NOW + timedelta(hours=1)).isoformat()})
        )


def test_create_rejects_non_object_body(repository):
    with pytest.raises(ValidationError, match="JSON object"):
        repository.create(["not", "an", "object"])


def test_get_unknown_raises_not_found(repository):
    with pytest.raises(NotFoundError):
        repository.get("missing")


def test_list_filters(repository):
    work = repository.create(payload(category="work", notificationDateTime=(NOW + timedelta(hours=1)).isoformat()))
    home = repository.create(
        payload(category="home", notificationMethod="email", notificationDateTime=(NOW + timedelta(hours=5)).isoformat())
    )
    repository.update(home.id, {"notificationStatus": "sent"})

    assert [r.id for r in repository.list()] == [work.id, home.id]
    assert [r.id for r in repository.list(ReminderFilter(category="work"))] == [work.id]
    assert [r.id for r in repository.list(ReminderFilter(status=NotificationStatus.SENT))] == [home.id]
    assert [r.id for r in repository.list(ReminderFilter(method=NotificationMethod.EMAIL))] == [home.id]
    assert [r.id for r in repository.list(ReminderFilter(upcoming_hours=2))] == [work.id]
    # Sent reminders are never "upcoming"
    assert [r.id for r in repository.list(ReminderFilter(upcoming_hours=24))] == [work.id]


def test_update_is_partial(repository):
    reminder = repository.create(payload(tags=["a"], category="bills"))
    updated = repository.update(reminder.id, {"title": "Pay rent now", "url": "https://bank.test"})

    assert updated.title == "Pay rent now"
    assert updated.url == "https://bank.test"
    assert updated.message == reminder.message
    assert updated.tags == ["a"]
    assert updated.category == "bills"
    assert updated.id == reminder.id
    assert updated.created_at == reminder.created_at
    assert repository.get(reminder.id).model_dump() == updated.model_dump()


def test_update_accepts_past_time_and_keeps_occurrence_count(repository, make_reminder):
    occurrence = make_reminder(
        notification_status=NotificationStatus.SENT,
        repeat={"interval": "daily", "occurrence_count": 3},
    )
    repository.create_occurrence(occurrence)

    updated = repository.update(
        occurrence.id,
        {"notificationDateTime": (NOW - timedelta(days=1)).isoformat(), "repeatSettings": {"interval": "weekly"}},
    )
    assert updated.notification_date_time == NOW - timedelta(days=1)
    assert updated.repeat_settings.interval.value == "weekly"
    assert updated.repeat_settings.occurrence_count == 3
    assert updated.notification_status == NotificationStatus.SENT


def test_update_validation(repository):
    reminder = repository.create(payload())
    with pytest.raises(ValidationError, match="Title cannot be empty"):
        repository.update(reminder.id, {"title": ""})
    with pytest.raises(ValidationError):
        repository.update(reminder.id, {"notificationMethod": "pigeon"})
    with pytest.raises(ValidationError):
        repository.update(reminder.id, {"notificationStatus": "dispatching"})
    with pytest.raises(NotFoundError):
        repository.update("missing", {"title": "x"})


def test_update_cannot_change_status_while_dispatching(repository):
    reminder = repository.create(payload())
    repository.claim(reminder.id)

    with pytest.raises(ValidationError, match="being dispatched"):
        repository.update(reminder.id, {"notificationStatus": "pending"})

    # Other fields are still editable
    assert repository.update(reminder.id, {"message": "edited"}).message == "edited"
    assert repository.get(reminder.id).notification_status == NotificationStatus.DISPATCHING


def test_delete(repository):
    reminder = repository.create(payload())
    assert repository.delete(reminder.id) is True
    assert repository.delete(reminder.id) is False
    assert repository.count() == 0


def test_due_returns_pending_oldest_first(repository, clock):
    later = repository.create(payload(notificationDateTime=(NOW + timedelta(hours=3)).isoformat()))
    sooner = repository.create(payload(notificationDateTime=(NOW + timedelta(hours=1)).isoformat()))
    future = repository.create(payload(notificationDateTime=(NOW + timedelta(days=2)).isoformat()))
    done = repository.create(payload(notificationDateTime=(NOW + timedelta(hours=2)).isoformat()))
    repository.update(done.id, {"notificationStatus": "sent"})

    now = clock.advance(hours=4)
    assert [r.id for r in repository.due(now)] == [sooner.id, later.id]
    assert [r.id for r in repository.due(now, limit=1)] == [sooner.id]
    assert future.id not in [r.id for r in repository.due(now)]


def test_claim_is_compare_and_set(repository):
    reminder = repository.create(payload())

    claimed = repository.claim(reminder.id)
    assert claimed.notification_status == NotificationStatus.DISPATCHING
    assert repository.claim(reminder.id) is None
    assert repository.claim("missing") is None


def test_concurrent_claims_have_exactly_one_winner(repository):
    reminder = repository.create(payload())
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        won = repository.claim(reminder.id)
        with lock:
            results.append(won)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1
    assert repository.get(reminder.id).notification_status == NotificationStatus.DISPATCHING


def test_complete_only_applies_to_claimed_records(repository, clock):
    reminder = repository.create(payload())
    assert repository.complete(reminder.id, NotificationStatus.SENT, "HTTP 200") is None

    repository.claim(reminder.id)
    dispatched_at = clock.advance(minutes=1)
    done = repository.complete(reminder.id, NotificationStatus.SENT, "HTTP 200", dispatched_at)

    assert done.notification_status == NotificationStatus.SENT
    assert done.dispatch_detail == "HTTP 200"
    assert done.last_notification_date_time == dispatched_at
    # Terminal records are never completed again
    assert repository.complete(reminder.id, NotificationStatus.FAILED, "late") is None


def test_complete_after_delete_is_noop(repository):
    reminder = repository.create(payload())
    repository.claim(reminder.id)
    repository.delete(reminder.id)
    assert repository.complete(reminder.id, NotificationStatus.SENT, "HTTP 200") is None
    assert repository.count() == 0


def test_complete_requires_terminal_status(repository):
    reminder = repository.create(payload())
    with pytest.raises(ValueError):
        repository.complete(reminder.id, NotificationStatus.PENDING)


def test_recover_in_flight_marks_dispatching_failed(repository):
    stuck = repository.create(payload())
    waiting = repository.create(payload())
    repository.claim(stuck.id)

    assert [r.id for r in repository.recover_in_flight()] == [stuck.id]
    recovered = repository.get(stuck.id)
    assert recovered.notification_status == NotificationStatus.FAILED
    assert recovered.dispatch_detail == "interrupted before completion"
    assert repository.get(waiting.id).notification_status == NotificationStatus.PENDING
    assert repository.recover_in_flight() == []


def test_create_occurrence_skips_future_check(repository, make_reminder):
    past = make_reminder(notification_date_time=NOW - timedelta(days=3), repeat={"interval": "daily"})
    repository.create_occurrence(past)
    assert repository.get(past.id).notification_date_time == NOW - timedelta(days=3)


def test_categories_tags_and_stats(repository):
    repository.create(payload(category="work", tags=["b", "a"]))
    repository.create(payload(category="home", tags=["a"], notificationMethod="email"))
    third = repository.create(payload(tags=["c"]))
    repository.update(third.id, {"notificationStatus": "failed"})

    assert repository.categories() == ["home", "work"]
    assert repository.tags() == ["a", "b", "c"]

    stats = repository.stats()
    assert stats.total == 3
    assert stats.pending == 2
    assert stats.failed == 1
    assert stats.sent == 0
    assert stats.notification_methods == {"webhook": 2, "email": 1}


def test_has_successor(repository, make_reminder):
    parent = repository.create(payload(repeatSettings={"interval": "daily"}))
    assert repository.has_successor(parent.id) is False

    repository.create_occurrence(
        make_reminder(parent_reminder_id=parent.id, repeat={"interval": "daily", "occurrence_count": 2})
    )
    assert repository.has_successor(parent.id) is True
    assert repository.has_successor("missing") is False
