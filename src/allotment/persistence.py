"""
Persistence provider for the assignment engine using SQLAlchemy.
Provides database engine, session management, and initialization.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from allotment.models import Base

MEMORY_URL = "sqlite:///:memory:"


class DatabaseManager:
    """Manages the database connection and sessions."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database manager with optional custom URL."""
        if database_url is None:
            # Default to allotment.db in current directory, or in-memory for tests
            if os.getenv("TESTING") == "1":
                database_url = MEMORY_URL
            else:
                database_url = "sqlite:///allotment.db"

        self.database_url = database_url
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url == MEMORY_URL:
                # One shared connection, otherwise every thread sees an empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(
            database_url,
            echo=os.getenv("SQL_DEBUG") == "1",
            **engine_kwargs,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._initialized = False

    def initialize_database(self) -> None:
        """Create all tables if they don't exist."""
        if not self._initialized:
            Base.metadata.create_all(bind=self.engine)
            self._initialized = True

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def use_session(self, session: Optional[Session] = None) -> Generator[Session, None, None]:
        """Join the caller's session if given, otherwise open and own a new one."""
        if session is not None:
            yield session
            return
        with self.get_session() as owned:
            yield owned

    def create_session(self) -> Session:
        """Create a new database session (caller responsible for cleanup)."""
        return self.SessionLocal()

    def reset_database(self) -> None:
        """Drop and recreate all tables (mainly for testing)."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        self._initialized = True

    def close(self) -> None:
        """Close the database engine."""
        self.engine.dispose()


def create_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Create and initialize a database manager."""
    db_manager = DatabaseManager(database_url)
    db_manager.initialize_database()
    return db_manager
