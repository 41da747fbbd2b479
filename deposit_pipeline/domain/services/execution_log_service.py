from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deposit_pipeline.core.enums import LogLevel
from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.domain.exceptions import PersistenceError
from deposit_pipeline.infrastructure.database.session import session_scope
from deposit_pipeline.infrastructure.repositories.execution_log_repository import (
    ExecutionLogRepository,
)

logger = get_logger(__name__)


class ExecutionAuditLog:
    """Execution-scoped log lines, written both to the process log and to
    the ``execution_logs`` table."""

    def __init__(self, session_factory: sessionmaker[Session], execution_id: UUID):
        self.session_factory = session_factory
        self.execution_id = execution_id

    def info(self, message: str) -> None:
        self.record(LogLevel.INFO, message)

    def warning(self, message: str) -> None:
        self.record(LogLevel.WARNING, message)

    def error(self, message: str) -> None:
        self.record(LogLevel.ERROR, message)

    def record(self, level: LogLevel, message: str) -> None:
        log_method = {
            LogLevel.INFO: logger.info,
            LogLevel.WARNING: logger.warning,
            LogLevel.ERROR: logger.error,
        }[level]
        log_method("execution_log", message=message)

        try:
            with session_scope(self.session_factory) as db:
                ExecutionLogRepository(db).add(self.execution_id, level.value, message)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Execution log could not be stored: {e}") from e
