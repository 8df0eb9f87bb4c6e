# clinicbook/database.py
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create the engine. SQLite gets BEGIN IMMEDIATE so writers serialise like row locks would."""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 15},
            echo=False,
        )

        @event.listens_for(sqlite_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return sqlite_engine

    return create_engine(database_url, pool_pre_ping=True, echo=False)


# Create engine
engine = build_engine(get_settings().database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# SQLSTATEs for a lost serializable race and a deadlock victim
SERIALIZATION_FAILURE_CODES = frozenset({"40001", "40P01"})


def is_serialization_failure(exc: OperationalError) -> bool:
    return getattr(exc.orig, "pgcode", None) in SERIALIZATION_FAILURE_CODES


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a block as one serializable unit with bounded lock waits.

    Commits on success, rolls back on any error. A serialization failure
    surfaces as SerializationConflict. Lock and statement timeouts surface
    as a retryable TransactionTimeout.

    Callers are expected to enter with no uncommitted changes. An already
    open transaction is committed first so the unit can set its own isolation
    level. Pending changes found at that point are logged, then committed.
    """
    from .errors import SerializationConflict, TransactionTimeout

    settings = get_settings()
    pending = bool(db.new or db.dirty or db.deleted)
    if pending:
        logger.warning(
            "Atomic unit entered with pending changes (%d new, %d dirty, %d deleted); committing them first",
            len(db.new), len(db.dirty), len(db.deleted),
        )
    if pending or db.in_transaction():
        db.commit()

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        db.execute(text(f"SET LOCAL lock_timeout = {int(settings.transaction_lock_timeout_ms)}"))
        db.execute(text(f"SET LOCAL statement_timeout = {int(settings.transaction_timeout_ms)}"))
    else:
        db.connection()

    try:
        yield db
        db.commit()
    except OperationalError as exc:
        db.rollback()
        if is_serialization_failure(exc):
            logger.info("Atomic unit lost a serialization race: %s", exc.orig)
            raise SerializationConflict() from exc
        logger.warning("Atomic unit aborted by the database: %s", exc.orig)
        raise TransactionTimeout() from exc
    except Exception:
        db.rollback()
        raise


def create_tables():
    """Create all database tables - models must be imported first"""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables():
    """Drop all database tables"""
    Base.metadata.drop_all(bind=engine)
    logger.info("Database tables dropped")
