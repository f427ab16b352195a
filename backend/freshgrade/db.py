"""Database engine and session helpers."""

from collections.abc import Generator
from pathlib import Path

from sqlmodel import Session, SQLModel, create_engine

from freshgrade.settings import settings
from freshgrade.storage import ensure_dir


engine = create_engine(settings.sqlite_url, connect_args={"check_same_thread": False})


def create_db_and_tables() -> None:
    """Create all SQLModel tables if they do not exist."""
    import freshgrade.models  # noqa: F401  registers table metadata

    if settings.sqlite_path:
        ensure_dir(Path(settings.sqlite_path).parent)
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for request-scoped dependency injection."""
    with Session(engine) as session:
        yield session
