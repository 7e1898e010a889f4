# src/infrastructure/db/session.py

from contextlib import contextmanager
import logging
import random
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from src.domain.exceptions import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Raised by the store when a concurrent writer got there first:
# stale version counter, duplicate seat row, lock/serialization failure.
_WRITE_CONFLICTS = (StaleDataError, IntegrityError, OperationalError)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Engine / Session Factory
# -----------------------------
def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


# -----------------------------
# Transactor
# -----------------------------
class Transactor:
    """
    Atomic read-validate-write unit over the relational store.

    ``transaction()`` opens one session and commits it on success.
    ``run()`` retries the whole unit of work when the store reports a
    write conflict; domain errors raised by the work are never retried.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except _WRITE_CONFLICTS as exc:
            session.rollback()
            raise TransientStorageError(
                f"Storage write conflict: {exc.__class__.__name__}"
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, work: Callable[[Session], T], operation: str = "transaction") -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.transaction() as db:
                    return work(db)
            except TransientStorageError:
                if attempt == self.max_attempts:
                    logger.error(
                        "%s gave up after %s attempts due to write conflicts.",
                        operation,
                        self.max_attempts,
                    )
                    raise
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "Write conflict during %s (attempt %s/%s). Retrying in %.3f seconds...",
                    operation,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                self._sleep(delay)
        raise TransientStorageError(f"{operation} did not run")

    def _backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
