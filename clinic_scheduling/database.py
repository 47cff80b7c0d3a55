# clinic_scheduling/database.py
from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings

Base = declarative_base()


def make_engine(url: str | None = None) -> Engine:
    """
    Builds the engine for `url` (defaults to settings.DATABASE_URL).
    SQLite gets the thread flag required when sessions live in worker threads.
    """
    url = url or settings.DATABASE_URL
    if not url:
        raise RuntimeError("DATABASE_URL is not configured (check your .env).")

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
            future=True,
        )

    # Postgres or others (production)
    return create_engine(
        url,
        pool_size=getattr(settings, "DB_POOL_SIZE", 2),
        max_overflow=getattr(settings, "DB_MAX_OVERFLOW", 5),
        pool_timeout=getattr(settings, "DB_POOL_TIMEOUT", 30),
        pool_recycle=getattr(settings, "DB_POOL_RECYCLE", 1800),  # 30 min
        pool_pre_ping=True,
        future=True,
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    # expire_on_commit=False: results are handed to callers after the unit of work closes
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        future=True,
    )


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine | None = None):
    """
    Creates the tables if they don't exist. Models are imported first so
    SQLAlchemy knows all the metadata.
    """
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
