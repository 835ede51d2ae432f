"""Engine, session factory and the unit-of-work helper used by every service."""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings
from app.core.errors import ConflictError, LedgerError, PersistenceError

logger = logging.getLogger(__name__)

Base = declarative_base()


def configure_sqlite(engine: Engine) -> None:
    """Enable foreign keys and real SAVEPOINT support on pysqlite connections."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself, otherwise SAVEPOINT is unreliable
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
        configure_sqlite(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, pool_timeout=settings.DB_POOL_TIMEOUT)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session, timeout_ms: Optional[int] = None) -> Iterator[Session]:
    """Run a compound operation as one all-or-nothing transaction.

    Commits on success and rolls back on any error. Unexpected database
    failures surface as ``PersistenceError`` so callers can retry after a
    fresh read; unique-constraint violations nobody translated surface as
    ``ConflictError``.
    """
    try:
        if timeout_ms and db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        yield db
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Constraint violation rolled back: {e.orig}")
        raise ConflictError("The record was modified concurrently. Reload and try again.") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Transaction failed and was rolled back: {e}")
        raise PersistenceError("The operation could not be saved. Reload and try again.") from e
    except Exception:
        db.rollback()
        raise


def init_db(bind: Optional[Engine] = None) -> None:
    """Create any missing tables."""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
