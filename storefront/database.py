# storefront/database.py
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from flask import g
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from storefront.config import Config


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": Config.SQL_ECHO, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Flask dev server and the test client share the engine across threads
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = Config.DB_POOL_SIZE
        options["max_overflow"] = Config.DB_MAX_OVERFLOW
    return options


engine = create_engine(Config.DATABASE_URL, **_engine_options(Config.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


def get_db() -> Session:
    """Request-scoped session, closed by ``close_db`` on teardown."""
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


def close_db(e=None) -> None:
    try:
        db = g.pop("db", None)
    except RuntimeError:
        # No application context, e.g. CLI jobs
        return
    if db is not None:
        if e is not None:
            db.rollback()
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Standalone session for jobs running outside a request."""
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database() -> None:
    """Create all tables that do not exist yet."""
    import storefront.models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=engine)
