"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management (`Database`)
- Connection pooling with sane defaults for server databases
- SQLite support with serialized write transactions (tests, local dev)
- Table definitions for enforcement state, usage counters and plan assignments
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from planguard.core.config import settings

logger = logging.getLogger("planguard.database")

metadata = MetaData()

# Connection pooling configuration (server databases only)
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


# One row per (owner, limit_key); mutated only under a row lock.
enforcement_states = Table(
    'enforcement_states',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('limit_key', String(100), nullable=False),
    Column('exceeded_at', DateTime(timezone=True), nullable=True),
    Column('blocked_at', DateTime(timezone=True), nullable=True),
    Column('last_warning_threshold', Float, nullable=True),
    Column('last_warning_at', DateTime(timezone=True), nullable=True),
    Column('data', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', 'limit_key', name='uq_enforcement_states_owner_limit'),
    Index('idx_enforcement_states_exceeded_at', 'exceeded_at'),
    Index('idx_enforcement_states_blocked_at', 'blocked_at'),
)

# Per-period usage counters; never decremented.
usages = Table(
    'usages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('limit_key', String(100), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('used', Integer, nullable=False, server_default='0'),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', 'limit_key', 'period_start', name='uq_usages_owner_limit_period'),
    Index('idx_usages_owner_limit', 'owner_type', 'owner_id', 'limit_key'),
)

# Manual / admin / billing-sync plan assignments, one per owner.
assignments = Table(
    'assignments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('plan_key', String(100), nullable=False),
    Column('source', String(50), nullable=False, server_default='manual'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', name='uq_assignments_owner'),
    Index('idx_assignments_plan_key', 'plan_key'),
)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings.

    For testing, TEST_DATABASE_URL wins if set.
    """
    return settings.TEST_DATABASE_URL or settings.DATABASE_URL


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so two readers that both try
    to upgrade fail with "database is locked" instead of waiting. Taking the
    write lock up front makes concurrent writers queue on the busy timeout,
    which is the closest SQLite gets to SELECT ... FOR UPDATE.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: Optional[str] = None, *, echo: bool = False) -> Engine:
    url = database_url or get_database_url()
    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={
                "timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS,
                "check_same_thread": False,
            },
            echo=echo,
        )
        _install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=echo,  # Set to True for SQL query logging
    )


class Database:
    """Engine + session factory shared by every planguard service."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False)

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, *, echo: bool = False) -> "Database":
        return cls(create_db_engine(database_url, echo=echo))

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session scope.

        Usage:
            with database.session() as session:
                session.execute(...)
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create all tables (idempotent)."""
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """
        Drop all tables.

        WARNING: This is destructive! Only use in tests or development.
        """
        metadata.drop_all(bind=self.engine)

    def reset(self) -> None:
        self.drop_all()
        self.create_all()

    def check_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("database connection check failed: %s", exc)
            return False

    def dispose(self) -> None:
        self.engine.dispose()
