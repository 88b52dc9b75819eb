from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ReminderSettings(BaseSettings):
    # Scheduling
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_SCAN_INTERVAL_SECONDS: float = 60
    SCHEDULER_BATCH_SIZE: int = 100
    RECOVER_IN_FLIGHT_ON_STARTUP: bool = True

    # Dispatch
    DISPATCH_WORKERS: int = 4
    DISPATCH_TIMEOUT_SECONDS: float = 10

    # Webhook
    WEBHOOK_URL: Optional[str] = None
    WEBHOOK_CATEGORY_URLS: Dict[str, str] = {}  # JSON object via env: {"work": "https://..."}
    WEBHOOK_USER_AGENT: str = "TN-API-Server-Reminder"

    # SMTP
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_SECURE: bool = False  # True: implicit SSL, False: STARTTLS
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_TO: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")


settings = ReminderSettings()
