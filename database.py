"""Database engine, session management and the unit-of-work scope."""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


# SQLAlchemy requires postgresql:// instead of postgres://
db_url = settings.DATABASE_URL
if db_url.startswith("postgres://"):
    db_url = db_url.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    db_url,
    # Only use check_same_thread for SQLite
    **({"connect_args": {"check_same_thread": False}} if db_url.startswith("sqlite") else {}),
    echo=False,
)


def enable_sqlite_savepoints(sqlite_engine):
    """Let pysqlite run real SAVEPOINTs: SQLAlchemy emits BEGIN itself instead of the driver."""

    @event.listens_for(sqlite_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


if db_url.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def get_db():
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables."""
    # Register the mappers before create_all
    import models.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def unit_of_work(db: Session):
    """
    Run a block as one atomic unit: commit on success, roll back on any error.

    Guard reads, derivative inserts and back-reference writes made inside
    the block either all land or none do.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        logger.error("Unit of work rolled back")
        raise
