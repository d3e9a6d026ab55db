"""
Database Connection Management for the AML Screening Engine

This module provides:
- Settings built from config.yaml (database.url / echo) plus pool tuning
  from DB_* environment variables
- A session provider used both as a FastAPI dependency and as a plain
  context manager by the CLI and scheduled jobs
- Engine creation and health checks with retry logic

SQLite (default, tests) and PostgreSQL (production, psycopg driver) are
both supported; only the pool arguments differ.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///aml_screening.db"


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = DEFAULT_DATABASE_URL
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_config(cls, database_config) -> 'DatabaseSettings':
        """
        Build settings from the ``database`` section of ConfigManager.

        The URL already reflects DATABASE_URL (applied by ConfigManager);
        pool sizing is read from DB_POOL_SIZE, DB_MAX_OVERFLOW,
        DB_POOL_TIMEOUT and DB_POOL_RECYCLE.
        """
        return cls(
            url=database_config.url,
            echo=database_config.echo,
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def engine_kwargs(self) -> dict:
        """Pool settings; SQLite uses its default pool."""
        if self.is_sqlite:
            return {"connect_args": {"check_same_thread": False}}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }

    def safe_url(self) -> str:
        """URL with the password masked, for logs."""
        scheme, sep, rest = self.url.partition("://")
        if "@" not in rest:
            return self.url
        credentials, _, host = rest.rpartition("@")
        user = credentials.split(":", 1)[0]
        return f"{scheme}{sep}{user}:***@{host}"


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for database operations.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and hands out sessions.

    Usage:
        db_provider = DatabaseSessionProvider.from_config(config)
        db_provider.create_tables()

        with db_provider.session_scope() as session:
            ScreeningRepository(session).set_monitoring(screening_id, True)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Database settings (SQLite file by default)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or DatabaseSettings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    @classmethod
    def from_config(cls, config) -> 'DatabaseSessionProvider':
        return cls(DatabaseSettings.from_config(config.database))

    def init(self) -> None:
        """Create the engine (if not injected) and the session factory."""
        if self._session_factory is not None:
            return

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        # Objects stay readable after commit so API responses can be built
        # outside the session scope
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()
        logger.info(f"Database session provider initialized ({self._engine.dialect.name})")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        logger.info(f"Connecting to database {self._settings.safe_url()}")
        engine = create_engine(
            self._settings.url,
            echo=self._settings.echo,
            **self._settings.engine_kwargs()
        )

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        if self._engine.dialect.name != "sqlite":
            return

        # Match deletes cascade from screenings
        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self.init()
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session that commits on success and rolls back on error.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_session(self) -> Generator[Session, None, None]:
        """FastAPI dependency form of session_scope()."""
        with self.session_scope() as session:
            yield session

    def create_tables(self) -> None:
        self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"✗ Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Dispose of the engine's connections."""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        engine: Pre-created engine (e.g., SQLite for unit tests)
        settings: Custom settings for testing
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)
