from contextlib import asynccontextmanager
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Optional
import logging
import sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import requests
import uvicorn

from app.core.config import Settings, settings
from app.reminders.api import router as reminders_router
from app.reminders.config import ReminderSettings, settings as default_reminder_settings
from app.reminders.dispatcher import NotificationDispatcher
from app.reminders.errors import NotFoundError, ReminderError, StorageError, ValidationError
from app.reminders.repository import ReminderRepository, create_repository
from app.reminders.scheduler import ReminderScheduler
from app.services.email_service import MailSender
from app.utils.timezone import utc_now


def configure_logging(app_settings: Settings) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if app_settings.LOG_FILE:
        handlers.append(logging.FileHandler(app_settings.LOG_FILE))
    logging.basicConfig(
        level=app_settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


configure_logging(settings)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Starting up {app.title}...")
    reminder_settings: ReminderSettings = app.state.reminder_settings
    scheduler: ReminderScheduler = app.state.reminder_scheduler

    if reminder_settings.RECOVER_IN_FLIGHT_ON_STARTUP:
        try:
            recovered = scheduler.recover_in_flight()
            if recovered:
                logger.warning(f"Marked {len(recovered)} interrupted reminder(s) as failed")
        except StorageError as e:
            logger.error(f"Could not recover in-flight reminders: {e}")

    if reminder_settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Reminder scheduler disabled by configuration")

    yield

    # Shutdown
    logger.info(f"Shutting down {app.title}...")
    scheduler.stop()
    logger.info("Shutdown complete")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(400, exc.message)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, exc.message)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage error on {request.method} {request.url.path}: {exc.message}")
        return _error_response(500, "Storage error")

    @app.exception_handler(ReminderError)
    async def reminder_error_handler(request: Request, exc: ReminderError):
        logger.error(f"Unhandled reminder error: {exc.message} - {request.url}")
        return _error_response(500, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return _error_response(400, "; ".join(parts) or "Invalid request")


def create_app(
    app_settings: Optional[Settings] = None,
    reminder_settings: Optional[ReminderSettings] = None,
    repository: Optional[ReminderRepository] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    mail_sender: Optional[MailSender] = None,
    http: Optional[requests.Session] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Create and configure the FastAPI application"""
    app_settings = app_settings or settings
    reminder_settings = reminder_settings or default_reminder_settings

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=app_settings.VERSION,
        description="TN API Server - reminders with webhook and e-mail notifications",
        lifespan=lifespan,
    )

    repository = repository or create_repository(app_settings, clock=clock)
    dispatcher = dispatcher or NotificationDispatcher(
        reminder_settings, mail_sender=mail_sender, http=http, clock=clock
    )
    app.state.settings = app_settings
    app.state.reminder_settings = reminder_settings
    app.state.reminder_repository = repository
    app.state.notification_dispatcher = dispatcher
    app.state.reminder_scheduler = ReminderScheduler(repository, dispatcher, reminder_settings, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)
    app.include_router(reminders_router, prefix=f"{app_settings.API_PREFIX}/reminders", tags=["Reminders"])

    @app.get("/health", tags=["Health Check"])
    def health_check(request: Request):
        """Health check endpoint"""
        state = request.app.state
        body = {
            "status": "OK",
            "message": "API Server is running",
            "database": state.reminder_repository.backend_name,
            "scheduler": state.reminder_scheduler.status(),
            "timestamp": datetime.now(dt_timezone.utc).isoformat(),
        }
        try:
            stats = state.reminder_repository.stats()
            body.update(
                reminderCount=stats.total,
                pendingReminders=stats.pending,
                sentReminders=stats.sent,
                failedReminders=stats.failed,
            )
        except StorageError as e:
            logger.error(f"Health check could not read reminders: {e}")
            body["warning"] = "Could not access database"
        return body

    if app_settings.METRICS_ENABLED:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    logger.info(f"{app_settings.PROJECT_NAME} configured ({repository.backend_name})")
    return app


# Create the FastAPI app instance
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
