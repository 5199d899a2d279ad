"""
Database connection utilities
"""

import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.utils.config import get_config

logger = logging.getLogger(__name__)

DATABASE_URL = get_config().database.url


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite needs check_same_thread disabled for FastAPI worker threads,
    and in-memory SQLite needs a StaticPool so every session sees the
    same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=echo
    )


engine = create_db_engine(DATABASE_URL, get_config().database.echo)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def get_db_session() -> Generator[Session, None, None]:
    """
    Dependency function that provides a database session

    Usage:
        @app.get("/")
        def endpoint(db: Session = Depends(get_db_session)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Create all tables"""
    from database.orm_models import Base
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created successfully")


def close_db():
    """Close database connections"""
    engine.dispose()
