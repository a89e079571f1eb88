"""Database configuration and session management."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from rbac_core.config import get_settings

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine configured for the database type in the URL."""
    if database_url.startswith("sqlite"):
        # SQLite-specific config
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    # PostgreSQL config (production)
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
