from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from app.db.base import Base


def build_engine(database_uri: str) -> Engine:
    """Engine for the embedded SQLite store; other URIs are passed through unchanged."""
    if database_uri.startswith("sqlite"):
        db_file = make_url(database_uri).database
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            database_uri,
            connect_args={"check_same_thread": False, "timeout": 30},  # API threads + scheduler thread
            echo=False,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine
    return create_engine(database_uri, pool_pre_ping=True, echo=False)


def build_session_factory(engine: Engine) -> sessionmaker:
    # Ensure reminder tables are registered on Base before create_all
    from app.reminders import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
