from collections.abc import Callable, Generator, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from leadflow.core.config import get_settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


engine = create_engine(get_settings().database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def dependency_session_scope(app: FastAPI) -> Callable[[], AbstractContextManager[Session]]:
    """Session scope for work outside a request that honours ``get_db`` overrides."""

    @contextmanager
    def scope() -> Iterator[Session]:
        provider = app.dependency_overrides.get(get_db, get_db)
        sessions = provider()
        try:
            yield next(sessions)
        finally:
            sessions.close()

    return scope
