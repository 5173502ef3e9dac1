from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator
from dropwatch.config import settings


def build_engine(url: str) -> Engine:
    """Create an engine with the pragmas/pool settings used across the app.

    sqlite runs in WAL mode with a busy timeout so concurrent ingestion lanes
    wait for the write lock instead of failing immediately.
    """
    engine_kwargs: dict = {"pool_pre_ping": True}
    if "sqlite" in url:
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
        engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
    new_engine = create_engine(url, **engine_kwargs)

    if "sqlite" in url:
        @event.listens_for(new_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for work that opens one session per worker lane."""
    return SessionLocal


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Schema migrations are owned by the deployment, not the app."""
    from dropwatch.models import Base  # noqa: F401 -- registers all models
    Base.metadata.create_all(bind=bind or engine)
