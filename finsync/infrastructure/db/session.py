"""
Database session management (SQLAlchemy)
"""
import psycopg
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from finsync.config import get_settings


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all ORM models
    """
    pass


# Singleton engine and session factory
_engine = None
_SessionLocal = None


def get_engine():
    """Get or create SQLAlchemy engine (singleton)"""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.get_sqlalchemy_url(), pool_pre_ping=True)
    return _engine


def get_session_factory():
    """Get or create session factory (singleton)"""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
    return _SessionLocal


def get_db() -> Session:
    """
    FastAPI dependency: opens a session and always closes it

    Usage:
        @router.get("/sync/run")
        def run_sync(db: Session = Depends(get_db)):
            ...
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_connection() -> None:
    """
    Health check - is the store reachable (raw psycopg)

    Raises:
        psycopg.OperationalError: if the database is unavailable
    """
    settings = get_settings()
    with psycopg.connect(settings.get_psycopg_dsn(), connect_timeout=3) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1;")
            cur.fetchone()
