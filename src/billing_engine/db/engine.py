"""
Database engine and session management
"""
import logging
from typing import Generator
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ..config import config
from .base import Base

logger = logging.getLogger(__name__)


def create_database_engine(database_url: str = None) -> Engine:
    """
    Create a database engine for the configured URL
    
    PostgreSQL gets a pre-pinged connection pool; SQLite (local development and
    tests) gets a thread-shareable connection.
    """
    url = database_url or config.get_database_url()
    
    if url.startswith("postgresql"):
        logger.info("DATABASE_URL configured for PostgreSQL")
        return create_engine(
            url,
            pool_pre_ping=True,  # Verify connections before using
            pool_size=5,
            max_overflow=10,
            pool_recycle=900,
            pool_timeout=10,
            connect_args={
                "connect_timeout": 5,
                "application_name": "billing_engine",
            },
        )
    
    if url.startswith("sqlite"):
        logger.info("DATABASE_URL configured for SQLite (local development)")
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    
    logger.warning(f"DATABASE_URL uses unknown format: {url[:20]}...")
    return create_engine(url, pool_pre_ping=True)


engine = create_database_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """Create all billing tables that do not exist yet"""
    from . import models  # noqa: F401  register models on Base.metadata
    
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Billing tables created")


def get_db() -> Generator[Session, None, None]:
    """
    Get database session
    Use as FastAPI dependency: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database session error: {e}", exc_info=True)
        raise
    finally:
        db.close()


def check_connection() -> bool:
    """Check that the database answers a trivial query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False
