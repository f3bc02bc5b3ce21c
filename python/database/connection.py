"""
Database connection management for the KYB Compliance Gate.

- ``DatabaseSettings``: connection parameters from ``DATABASE_URL`` or ``DB_*``
- ``DatabaseSessionProvider``: engine plus ``session_scope()`` transactions
- ``init_db`` / ``close_db``: process-wide provider for the API server

Engine creation is retried with tenacity while the database is still coming
up. Transitions in ``compliance`` open one ``session_scope()`` each and lock
the rows they change.
"""

import os
import logging
from typing import Any, Dict, Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
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


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "kyb_gate"
    user: str = "kyb_user"
    password: str = "kyb_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "kyb_gate"),
            user=os.getenv("DB_USER", "kyb_user"),
            password=os.getenv("DB_PASSWORD", "kyb_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    def get_url(self) -> str:
        """Build database URL. A full DATABASE_URL takes precedence."""
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> Dict[str, Any]:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# Engine creation waits out a database that is still starting
db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


# ============================================
# SQLITE SUPPORT
# ============================================

def create_sqlite_engine(url: str = "sqlite://", echo: bool = False) -> Engine:
    """
    Create a SQLite engine with working SAVEPOINT support.

    pysqlite's implicit transaction handling breaks nested transactions, so
    BEGIN is emitted explicitly. In-memory databases share one connection
    across threads.
    """
    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and hands out transactional sessions.

    Usage:
        db = DatabaseSessionProvider()
        with db.session_scope() as session:
            InstitutionRepository(session).get_by_wallet(wallet, for_update=True)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self) -> None:
        if self._session_factory is not None:
            return
        if self._engine is None:
            self._engine = self._create_engine()

        # Objects stay readable after the scope commits
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine(self) -> Engine:
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_sqlite_engine(url, echo=self._settings.echo)
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **self._settings.pool_options()
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """One transaction: commits on exit, rolls back on exception."""
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("Database health check failed: %s", e)
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


# ============================================
# PROCESS-WIDE PROVIDER
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def init_db() -> DatabaseSessionProvider:
    """Create (once) and initialise the server's database provider."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    _db_provider.init()
    return _db_provider


def close_db() -> None:
    """Dispose the server's database provider, if one was created."""
    global _db_provider
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


def create_test_provider(engine: Optional[Engine] = None) -> DatabaseSessionProvider:
    """Provider on an in-memory SQLite engine with all tables created."""
    provider = DatabaseSessionProvider(
        settings=DatabaseSettings(),
        engine=engine or create_sqlite_engine()
    )
    provider.create_tables()
    return provider
