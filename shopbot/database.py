import asyncio
from typing import Any, Callable, TypeVar

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shopbot.config import settings

T = TypeVar("T")

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def build_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def build_session_factory(bind) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


class SessionRunner:
    """Run blocking ORM work off the event loop.

    Every call gets its own session and its own transaction: the callable
    receives the session as first argument, the runner commits on success
    and rolls back on error. Concurrent calls never share a session.
    """

    def __init__(self, session_factory: Callable[[], Session] = None):
        self.session_factory = session_factory or SessionLocal

    def run_sync(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        db = self.session_factory()
        try:
            result = fn(db, *args, **kwargs)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(self.run_sync, fn, *args, **kwargs)
