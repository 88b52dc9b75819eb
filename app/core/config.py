from typing import List, Optional, Literal
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings(BaseSettings):
    # Project Information
    PROJECT_NAME: str = "TN API Server"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"

    # Server settings
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 3000
    DEBUG: bool = False

    # Storage: flat JSON files by default, SQLite through SQLAlchemy as an alternative
    DATA_DIR: str = "data"
    STORAGE_BACKEND: Literal["json", "sqlite"] = "json"
    SQLALCHEMY_DATABASE_URI: Optional[str] = None

    # Timezone used when a reminder does not carry its own
    DEFAULT_TIMEZONE: str = "Asia/Tokyo"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Metrics
    METRICS_ENABLED: bool = False

    # CORS Configuration
    ALLOWED_ORIGINS: List[str] = ["*"]

    # --- Validators & Derived Settings ---
    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Optional[str]) -> str:
        if not v or not str(v).strip():
            return "INFO"
        return str(v).strip().upper()

    @field_validator("DEFAULT_TIMEZONE")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @model_validator(mode="after")
    def _finalize_and_validate(self) -> "Settings":
        # Derive SQLALCHEMY_DATABASE_URI if not provided
        if not self.SQLALCHEMY_DATABASE_URI:
            db_path = Path(self.DATA_DIR) / "reminders.db"
            self.SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path.as_posix()}"
        return self

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
