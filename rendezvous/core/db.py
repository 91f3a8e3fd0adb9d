from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from loguru import logger

from rendezvous.core.config import DATABASE_URL
from rendezvous.core.errors import PersistenceFailure

# --- Base (single source of truth) ---
Base = declarative_base()


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}

    kwargs = {"connect_args": {"check_same_thread": False}}
    # in-memory sqlite: every session must see the same connection
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


# --- Engine ---
engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    **_engine_kwargs(DATABASE_URL),
)

# --- Session factory ---
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)

# --- SQL query logging ---
@event.listens_for(engine, "before_cursor_execute")
def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    logger.debug(f"SQL: {statement} | params={parameters}")


# --- Transactions ---
@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Commit everything written through `db` inside the block, or nothing.

    IntegrityError is re-raised untouched so callers can map uniqueness
    violations (AlreadyConnected, conversation fetch-and-retry). Every other
    driver/transport error surfaces as PersistenceFailure.
    """
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Transaction rolled back: {exc}")
        raise PersistenceFailure() from exc
    except Exception:
        db.rollback()
        raise


# --- FastAPI dependencies ---
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    # long-lived websocket handlers open one short session per event
    return SessionLocal
