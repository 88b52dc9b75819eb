"""
Notification dispatch: one handler per NotificationMethod.

A handler returns a short detail string on success and raises on any problem.
``NotificationDispatcher.dispatch`` turns every exception into a ``failed``
result, so callers never see delivery errors.
"""
import html
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import requests

from app.core.config import settings as app_config
from app.services.email_service import MailMessage, MailSender, SmtpMailSender
from app.utils.timezone import format_local, utc_now

from .config import ReminderSettings, settings
from .errors import DispatchError
from .metrics import reminders_dispatch_failed_total, reminders_dispatch_success_total
from .schemas import NotificationMethod, NotificationStatus, Reminder

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    status: NotificationStatus
    detail: str
    dispatched_at: datetime

    @property
    def ok(self) -> bool:
        return self.status == NotificationStatus.SENT


def webhook_payload(reminder: Reminder) -> Dict[str, Any]:
    return {
        "id": reminder.id,
        "title": reminder.title,
        "message": reminder.message,
        "url": reminder.url,
        "notificationDateTime": reminder.notification_date_time.isoformat(),
        "timezone": reminder.timezone,
        "category": reminder.category,
        "tags": list(reminder.tags),
        "occurrence": reminder.repeat_settings.occurrence_count if reminder.repeat_settings else 1,
    }


def build_email(reminder: Reminder, to: str) -> MailMessage:
    """Plain-text and HTML bodies for a reminder e-mail."""
    scheduled = f"{format_local(reminder.notification_date_time, reminder.timezone)} ({reminder.timezone})"

    text_lines = [reminder.title, ""]
    if reminder.message:
        text_lines += [reminder.message, ""]
    text_lines.append(f"Scheduled: {scheduled}")
    if reminder.category:
        text_lines.append(f"Category: {reminder.category}")
    if reminder.tags:
        text_lines.append(f"Tags: {', '.join(reminder.tags)}")
    if reminder.url:
        text_lines += ["", f"URL: {reminder.url}"]

    esc = html.escape
    html_parts = [f"<h2>{esc(reminder.title)}</h2>"]
    if reminder.message:
        html_parts.append(f"<p>{esc(reminder.message)}</p>")
    html_parts.append(f"<p><strong>Scheduled:</strong> {esc(scheduled)}</p>")
    if reminder.category:
        html_parts.append(f"<p><strong>Category:</strong> {esc(reminder.category)}</p>")
    if reminder.tags:
        html_parts.append(f"<p><strong>Tags:</strong> {esc(', '.join(reminder.tags))}</p>")
    if reminder.url:
        html_parts.append(f'<p>URL: <a href="{esc(reminder.url)}">{esc(reminder.url)}</a></p>')

    return MailMessage(
        to=to,
        subject=f"Reminder: {reminder.title}",
        text="\n".join(text_lines),
        html="\n".join(html_parts),
    )


class NotificationDispatcher:
    def __init__(
        self,
        reminder_settings: Optional[ReminderSettings] = None,
        mail_sender: Optional[MailSender] = None,
        http: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = reminder_settings or settings
        self.mail_sender = mail_sender or SmtpMailSender.from_settings(self.settings)
        self._http = http
        self._local = threading.local()
        self._clock = clock
        self._handlers: Dict[NotificationMethod, Callable[[Reminder], str]] = {
            NotificationMethod.WEBHOOK: self._send_webhook,
            NotificationMethod.EMAIL: self._send_email,
        }

    @property
    def http(self):
        """Injected client, or a requests.Session owned by the calling thread."""
        if self._http is not None:
            return self._http
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def dispatch(self, reminder: Reminder) -> DispatchResult:
        method = NotificationMethod(reminder.notification_method)
        handler = self._handlers.get(method)
        try:
            if handler is None:
                raise DispatchError(f"Unsupported notification method: {method.value}")
            detail = handler(reminder)
        except DispatchError as exc:
            return self._failed(reminder, method, exc.message)
        except Exception as exc:  # any channel error is recorded as a failed delivery
            return self._failed(reminder, method, f"{type(exc).__name__}: {exc}")

        reminders_dispatch_success_total.labels(method=method.value).inc()
        logger.info(f"Reminder {reminder.id} sent via {method.value}: {detail}")
        return DispatchResult(NotificationStatus.SENT, detail, self._clock())

    def _failed(self, reminder: Reminder, method: NotificationMethod, detail: str) -> DispatchResult:
        reminders_dispatch_failed_total.labels(method=method.value).inc()
        logger.warning(f"Reminder {reminder.id} failed via {method.value}: {detail}")
        return DispatchResult(NotificationStatus.FAILED, detail, self._clock())

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------
    def webhook_url_for(self, reminder: Reminder) -> Optional[str]:
        category_urls = self.settings.WEBHOOK_CATEGORY_URLS or {}
        if reminder.category and category_urls.get(reminder.category):
            return category_urls[reminder.category]
        return self.settings.WEBHOOK_URL

    def _send_webhook(self, reminder: Reminder) -> str:
        url = self.webhook_url_for(reminder)
        if not url:
            raise DispatchError("webhook URL not configured")

        params = {"title": reminder.title}
        if reminder.message:
            params["message"] = reminder.message
        if reminder.url:
            params["url"] = reminder.url

        response = self.http.post(
            url,
            params=params,
            json=webhook_payload(reminder),
            headers={"User-Agent": self.settings.WEBHOOK_USER_AGENT},
            timeout=self.settings.DISPATCH_TIMEOUT_SECONDS,
            allow_redirects=False,
        )
        # Redirects and every other non-2xx status count as failed
        if not 200 <= response.status_code < 300:
            raise DispatchError(f"webhook responded with HTTP {response.status_code}")
        return f"HTTP {response.status_code}"

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------
    def _send_email(self, reminder: Reminder) -> str:
        recipient = self.settings.EMAIL_TO
        if not recipient:
            raise DispatchError("email recipient not configured")
        message_id = self.mail_sender.send(build_email(reminder, recipient))
        return f"message id {message_id}"

    # ------------------------------------------------------------------
    # Test notifications
    # ------------------------------------------------------------------
    def send_test(self, method: NotificationMethod) -> DispatchResult:
        """Dispatch a synthetic reminder through ``method`` without storing it."""
        now = self._clock()
        reminder = Reminder(
            id=f"test-{uuid4().hex}",
            title="Test notification",
            message="This is a test notification from TN API Server",
            notification_date_time=now,
            notification_method=method,
            notification_status=NotificationStatus.DISPATCHING,
            timezone=app_config.DEFAULT_TIMEZONE,
            created_at=now,
            updated_at=now,
        )
        return self.dispatch(reminder)
