"""
Database Connection Manager
===========================

Handles the async connection to the project-specific SQLite database.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from verifyforge.db.models import Base

STATE_DIR_NAME = ".verifyforge"
DB_FILENAME = "state.db"

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(project_path: Path, state_dir: str = STATE_DIR_NAME) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.
    The database file is stored in .verifyforge/state.db within the project root.
    """
    global _async_session_maker, _engine

    db_dir = Path(project_path) / state_dir
    db_dir.mkdir(parents=True, exist_ok=True)

    db_path = db_dir / DB_FILENAME
    db_url = f"sqlite+aiosqlite:///{db_path}"

    if _engine is not None:
        await _engine.dispose()

    _engine = create_async_engine(db_url, echo=False)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


def is_initialized() -> bool:
    """Check whether init_db() has been called."""
    return _async_session_maker is not None


async def close_db() -> None:
    """Dispose the engine and forget the session maker."""
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None


async def get_db():
    """Dependency for getting a database session."""
    maker = get_session_maker()
    async with maker() as session:
        yield session
