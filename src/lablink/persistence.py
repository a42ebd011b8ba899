"""
Persistence provider for the VM registry.

Owns the SQLAlchemy engine and session factory. Every session is a single
transaction: committed when the block exits cleanly, rolled back otherwise.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from lablink.errors import StorageError
from lablink.models import Base

# Seconds a SQLite writer waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 30


def _resolve_url(database_url: Optional[str]) -> str:
    if database_url:
        return database_url
    env_url = os.getenv("LABLINK_DATABASE_URL")
    if env_url:
        return env_url
    return "sqlite:///:memory:" if os.getenv("TESTING") == "1" else "sqlite:///lablink.db"


def _engine_options(database_url: str) -> Dict[str, Any]:
    if not database_url.startswith("sqlite"):
        return {}
    # Claims, the listener's worker threads and the HTTP threadpool share the engine
    options: Dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    }
    if ":memory:" in database_url:
        # An in-memory database exists per connection; keep exactly one
        options["poolclass"] = StaticPool
    return options


class DatabaseManager:
    """Engine and session factory for one registry database.

    The URL defaults to ``LABLINK_DATABASE_URL``, then to ``lablink.db`` in the
    working directory (in-memory when ``TESTING=1``).
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = _resolve_url(database_url)
        self.engine = create_engine(
            self.database_url,
            echo=os.getenv("SQL_DEBUG") == "1",
            **_engine_options(self.database_url),
        )
        # Views are built from records after commit, so keep attributes loaded
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        self._initialized = False

    def initialize_database(self) -> None:
        """Create the registry tables if they are missing. Raises StorageError."""
        if self._initialized:
            return
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialize registry schema: {e}") from e
        self._initialized = True

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reset_database(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        self._initialized = True

    def close(self) -> None:
        self.engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """The process-wide database, created from the environment on first use."""
    global _db_manager
    if _db_manager is None:
        _db_manager = init_database()
    return _db_manager


def init_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Replace the process-wide database with one at ``database_url``."""
    global _db_manager
    _db_manager = DatabaseManager(database_url)
    _db_manager.initialize_database()
    return _db_manager
