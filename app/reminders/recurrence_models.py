"""
Recurring reminder patterns: next-occurrence arithmetic and successor limits
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Optional

from croniter import croniter

from app.utils.timezone import get_zoneinfo, to_utc_aware

from .schemas import RepeatInterval, Reminder

logger = logging.getLogger(__name__)


def add_months(local: datetime, months: int) -> datetime:
    """Same wall-clock time ``months`` later, clamped to the last valid day of the target month."""
    month_index = local.month - 1 + months
    year = local.year + month_index // 12
    month = month_index % 12 + 1
    day = min(local.day, calendar.monthrange(year, month)[1])
    return local.replace(year=year, month=month, day=day)


class RecurrenceCalculator:
    """Calculates next occurrence for recurrence patterns"""

    @staticmethod
    def next_occurrence(
        anchor: datetime,
        interval: RepeatInterval,
        tz: Optional[str] = None,
        cron_expression: Optional[str] = None,
    ) -> Optional[datetime]:
        """
        Next occurrence strictly after ``anchor``, as a UTC-aware datetime.

        daily and weekly are fixed offsets (24h, 7 x 24h). monthly, yearly and
        custom (cron) are evaluated on the local calendar of ``tz``. Returns None
        instead of raising when the result is out of range or the cron
        expression cannot be evaluated.
        """
        anchor = to_utc_aware(anchor)
        interval = RepeatInterval(interval)
        try:
            if interval == RepeatInterval.DAILY:
                return anchor + timedelta(hours=24)
            if interval == RepeatInterval.WEEKLY:
                return anchor + timedelta(hours=24 * 7)

            zone = get_zoneinfo(tz) or dt_timezone.utc
            local = anchor.astimezone(zone)
            if interval == RepeatInterval.MONTHLY:
                return add_months(local, 1).astimezone(dt_timezone.utc)
            if interval == RepeatInterval.YEARLY:
                return add_months(local, 12).astimezone(dt_timezone.utc)
            return RecurrenceCalculator._next_cron(local, cron_expression)
        except (OverflowError, ValueError) as exc:
            logger.warning(f"No next occurrence after {anchor.isoformat()} ({interval.value}): {exc}")
            return None

    @staticmethod
    def _next_cron(local_anchor: datetime, cron_expression: Optional[str]) -> Optional[datetime]:
        if not cron_expression:
            logger.warning("Custom repeat interval without cron expression")
            return None
        try:
            itr = croniter(cron_expression, local_anchor)
            nxt = itr.get_next(datetime)
        except (KeyError, ValueError, OverflowError) as exc:
            # croniter's own errors derive from ValueError
            logger.warning(f"Failed to compute next cron time for '{cron_expression}': {exc}")
            return None
        return to_utc_aware(nxt)

    @staticmethod
    def plan_successor(reminder: Reminder) -> Optional[datetime]:
        """
        Time of the occurrence that follows ``reminder``, or None when the series ends.

        Anchored on the occurrence's scheduled time, never on when it was dispatched.
        """
        repeat = reminder.repeat_settings
        if repeat is None:
            return None
        if repeat.max_occurrences is not None and repeat.occurrence_count >= repeat.max_occurrences:
            logger.info(
                f"Reminder {reminder.id} reached max occurrences ({repeat.max_occurrences}); series ends"
            )
            return None

        next_time = RecurrenceCalculator.next_occurrence(
            reminder.notification_date_time,
            repeat.interval,
            tz=reminder.timezone,
            cron_expression=repeat.cron_expression,
        )
        if next_time is None:
            return None
        if repeat.end_date is not None and next_time > repeat.end_date:
            logger.info(f"Reminder {reminder.id} passed its end date {repeat.end_date.isoformat()}; series ends")
            return None
        return next_time
