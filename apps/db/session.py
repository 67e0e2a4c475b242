"""
Database connection and session management.
"""
from typing import Callable

from sqlmodel import create_engine, SQLModel, Session
from apps.core.settings import settings


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 300,  # Recycle connections every 5 minutes
    }


# Create database engine
engine = create_engine(
    settings.database_url,
    echo=False,
    **_engine_kwargs(settings.database_url)
)


def create_db_and_tables():
    """Create database tables."""
    # Import models so their tables are registered on the metadata
    import apps.db.models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    """Dependency to get database session."""
    with Session(engine) as session:
        yield session


def get_session_factory() -> Callable[[], Session]:
    """Dependency returning a factory for sessions used after the response is sent."""
    return lambda: Session(engine)
