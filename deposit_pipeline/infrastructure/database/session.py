import time
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.domain.exceptions import DatabaseConnectionError

logger = get_logger(__name__)


def create_db_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
) -> Engine:
    kwargs = {"pool_pre_ping": True, "echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """One session, one transaction: commit on success, roll back on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def wait_for_database(engine: Engine, max_retries: int = 5, interval_seconds: float = 2.0) -> None:
    attempt = 0
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("database_reachable", attempts=attempt + 1)
            return
        except OperationalError as e:
            attempt += 1
            if attempt > max_retries:
                logger.error("database_unreachable", attempts=attempt, error=str(e))
                raise DatabaseConnectionError(
                    f"Database unreachable after {attempt} attempts: {e}"
                ) from e

            logger.warning(
                "database_connect_retry",
                attempt=attempt,
                max_retries=max_retries,
                retry_in=interval_seconds,
            )
            time.sleep(interval_seconds)
