"""
Background scheduler: scans for due reminders, claims, dispatches, records the
outcome and spawns the next occurrence of recurring reminders.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from app.utils.timezone import utc_now

from .config import ReminderSettings, settings
from .dispatcher import NotificationDispatcher
from .metrics import (
    occurrences_spawned_total,
    scheduler_claimed_total,
    scheduler_errors_total,
    scheduler_scans_total,
)
from .recurrence_models import RecurrenceCalculator
from .repository import ReminderRepository
from .schemas import NotificationStatus, Reminder

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    scanned: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    spawned: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: "ScanResult") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.spawned += other.spawned
        self.errors += other.errors

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ReminderScheduler:
    def __init__(
        self,
        repository: ReminderRepository,
        dispatcher: NotificationDispatcher,
        reminder_settings: Optional[ReminderSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.settings = reminder_settings or settings
        self._clock = clock
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_result: Optional[ScanResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reminder-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            f"Reminder scheduler started (interval={self.settings.SCHEDULER_SCAN_INTERVAL_SECONDS}s, "
            f"batch={self.settings.SCHEDULER_BATCH_SIZE}, workers={self.settings.DISPATCH_WORKERS})"
        )

    def stop(self, timeout: Optional[float] = 10) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Reminder scheduler did not stop within timeout")
        else:
            logger.info("Reminder scheduler stopped")
        self._thread = None

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "scanIntervalSeconds": self.settings.SCHEDULER_SCAN_INTERVAL_SECONDS,
            "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                scheduler_errors_total.inc()
                logger.exception("Reminder scheduler tick failed; retrying at next tick")
            if self._stop_event.wait(self.settings.SCHEDULER_SCAN_INTERVAL_SECONDS):
                break

    def recover_in_flight(self) -> List[Reminder]:
        """
        Fail reminders left in ``dispatching`` by a previous process and continue
        their series. Returns the recovered reminders.
        """
        recovered = self.repository.recover_in_flight()
        for reminder in recovered:
            try:
                self._spawn_successor(reminder)
            except Exception:
                scheduler_errors_total.inc()
                logger.exception(f"Failed to spawn successor for recovered reminder {reminder.id}")
        return recovered

    # ------------------------------------------------------------------
    # One scan
    # ------------------------------------------------------------------
    def run_once(self, now: Optional[datetime] = None) -> ScanResult:
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous scheduler tick still running; skipping")
            return ScanResult()
        try:
            now = now or self._clock()
            result = ScanResult()
            scheduler_scans_total.inc()

            due = self.repository.due(now, self.settings.SCHEDULER_BATCH_SIZE)
            result.scanned = len(due)

            claimed: List[Reminder] = []
            for reminder in due:
                won = self.repository.claim(reminder.id)
                if won is None:
                    result.skipped += 1
                    logger.debug(f"Reminder {reminder.id} already claimed or removed; skipping")
                    continue
                claimed.append(won)
            result.claimed = len(claimed)
            if claimed:
                scheduler_claimed_total.inc(len(claimed))

            for outcome in self._process_all(claimed):
                result.merge(outcome)

            self.last_tick_at = now
            self.last_result = result
            if result.scanned:
                logger.info(f"Scheduler tick: {result.to_dict()}")
            return result
        finally:
            self._tick_lock.release()

    def _process_all(self, claimed: List[Reminder]) -> List[ScanResult]:
        workers = max(1, min(self.settings.DISPATCH_WORKERS, len(claimed)))
        if workers == 1:
            return [self._process(reminder) for reminder in claimed]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reminder-dispatch") as pool:
            return list(pool.map(self._process, claimed))

    def _process(self, reminder: Reminder) -> ScanResult:
        outcome = ScanResult()
        try:
            dispatched = self.dispatcher.dispatch(reminder)
            if dispatched.ok:
                outcome.sent = 1
            else:
                outcome.failed = 1

            completed = self.repository.complete(
                reminder.id, dispatched.status, dispatched.detail, dispatched.dispatched_at
            )
            if completed is None:
                logger.info(f"Reminder {reminder.id} was removed during dispatch; no successor created")
                return outcome
            if self._spawn_successor(completed) is not None:
                outcome.spawned = 1
        except Exception:
            outcome.errors = 1
            scheduler_errors_total.inc()
            logger.exception(f"Failed to process reminder {reminder.id}")
        return outcome

    def _spawn_successor(self, reminder: Reminder) -> Optional[Reminder]:
        next_time = RecurrenceCalculator.plan_successor(reminder)
        if next_time is None:
            return None
        # A re-armed occurrence fires again but keeps its original successor
        if self.repository.has_successor(reminder.id):
            logger.info(f"Reminder {reminder.id} already has a successor; not spawning another")
            return None

        repeat = reminder.repeat_settings.model_copy(
            update={"occurrence_count": reminder.repeat_settings.occurrence_count + 1}
        )
        now = self._clock()
        successor = Reminder(
            id=uuid4().hex,
            title=reminder.title,
            message=reminder.message,
            url=reminder.url,
            notification_date_time=next_time,
            notification_method=reminder.notification_method,
            notification_status=NotificationStatus.PENDING,
            category=reminder.category,
            tags=list(reminder.tags),
            timezone=reminder.timezone,
            repeat_settings=repeat,
            parent_reminder_id=reminder.id,
            created_at=now,
            updated_at=now,
        )
        self.repository.create_occurrence(successor)
        occurrences_spawned_total.inc()
        logger.info(
            f"Spawned occurrence {successor.id} (#{repeat.occurrence_count}) of {reminder.id} "
            f"due {next_time.isoformat()}"
        )
        return successor
