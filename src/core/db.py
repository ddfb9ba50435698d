from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)

_engine = None
SessionLocal = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class BaseModel(Base):
    __abstract__ = True

    @classmethod
    def create(cls, session: Session, **kwargs):
        instance = cls(**kwargs)
        session.add(instance)
        session.flush()
        return instance

    def save(self, session: Session):
        session.add(self)
        session.flush()
        return self


def init_engine(database_uri: str):
    global _engine, SessionLocal
    if _engine is None:
        if database_uri.lower().startswith("sqlite:"):
            # Timer threads share the engine with request threads.
            _engine = create_engine(
                database_uri,
                future=True,
                connect_args={"check_same_thread": False},
            )
        else:
            _engine = create_engine(database_uri, pool_pre_ping=True, future=True)
        SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False, class_=Session)
    return _engine


def _ensure_model_metadata_loaded() -> None:
    # Import side effect: registers ORM models on Base.metadata.
    import core.models  # noqa: F401


def init_db() -> None:
    if _engine is None:
        raise RuntimeError("Database engine is not initialized")
    _ensure_model_metadata_loaded()
    Base.metadata.create_all(bind=_engine)


def run_startup_db_healthcheck(
    database_uri: str,
    *,
    timeout_seconds: float,
    interval_seconds: float,
) -> None:
    engine = create_engine(database_uri, future=True)
    deadline = time.monotonic() + max(timeout_seconds, 0.0)
    attempt = 0
    try:
        while True:
            attempt += 1
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
                logger.info("Database healthcheck passed after %s attempt(s)", attempt)
                return
            except Exception as exc:
                if time.monotonic() >= deadline:
                    raise RuntimeError(
                        f"Database healthcheck failed after {attempt} attempt(s): {exc}"
                    ) from exc
                logger.warning(
                    "Database healthcheck attempt %s failed: %s", attempt, exc
                )
                time.sleep(interval_seconds)
    finally:
        engine.dispose()


@contextmanager
def session_scope():
    if SessionLocal is None:
        raise RuntimeError("Database session is not initialized")
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
