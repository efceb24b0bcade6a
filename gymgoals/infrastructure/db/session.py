"""
Database session management (SQLAlchemy)

One engine (connection pool) per process: created lazily on first use,
disposed on application shutdown via dispose_engine().
"""
import psycopg
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from gymgoals.config import get_settings


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all ORM models
    """
    pass


# Singleton engine and session factory
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def get_engine() -> Engine:
    """Get or create SQLAlchemy engine (singleton)"""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.get_sqlalchemy_url()
        _engine = create_engine(url, pool_pre_ping=True)
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create session factory (singleton)"""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return _SessionLocal


def dispose_engine() -> None:
    """
    Закрыть пул соединений (process shutdown).

    After this call the next get_engine() builds a fresh pool, so it must only
    run when no request is in flight.
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def check_db_connection() -> None:
    """
    Health check - проверка доступности PostgreSQL (raw psycopg)

    Raises:
        psycopg.OperationalError: если БД недоступна
    """
    settings = get_settings()
    with psycopg.connect(settings.DATABASE_URL, connect_timeout=3) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1;")
            cur.fetchone()
