from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.config import EngineConfig
from src.models import Base


@lru_cache(maxsize=None)
def get_engine(database_url: Optional[str] = None):
    """
    Create (once per URL) and return a SQLAlchemy engine

    PostgreSQL gets a connection pool sized for the API workers:
    - pool_pre_ping: Verify connections before using (handle stale connections)
    - pool_size: Number of connections to maintain in pool
    - max_overflow: Additional connections allowed when pool is full
    - pool_recycle: Recycle connections after 1 hour

    SQLite (local development, tests) is opened so the session can be used
    from FastAPI's threadpool.
    """
    if database_url is None:
        database_url = EngineConfig.from_env().database_url

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        echo=False,  # Set to True for SQL debugging
    )


def init_db(engine=None):
    """Initialize the database by creating all tables"""
    if engine is None:
        engine = get_engine()

    Base.metadata.create_all(bind=engine)
    print(f"Database initialized at: {engine.url}")


def get_session() -> Session:
    """Get a new database session"""
    engine = get_engine()
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal()


def get_db():
    """FastAPI dependency yielding a session that is closed after the request"""
    db = get_session()
    try:
        yield db
    finally:
        db.close()
