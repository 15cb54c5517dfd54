from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings, Settings


_engine = None
_SessionLocal = None


def init_engine(database_url: str | None = None, settings: Settings | None = None) -> None:
    global _engine, _SessionLocal
    settings = settings or get_settings()
    database_url = database_url or settings.DATABASE_URL
    if not database_url:
        return
    engine_kwargs = {"pool_pre_ping": True, "future": True, "echo": settings.DB_ECHO}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    _engine = create_engine(database_url, **engine_kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autocommit=False, autoflush=False)


@contextmanager
def get_session() -> Iterator[Session | None]:
    if _SessionLocal is None:  # lazy init
        init_engine()
    if _SessionLocal is None:  # still None -> yield a dummy context
        yield None
        return
    db = _SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:  # pragma: no cover
        db.rollback()
        raise
    finally:
        db.close()
