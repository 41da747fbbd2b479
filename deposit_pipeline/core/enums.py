from enum import Enum


class ConsumerState(str, Enum):
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    DONE = "DONE"


class FailureReason(str, Enum):
    INVALID_CATEGORY = "invalid category"
    NON_POSITIVE_AMOUNT = "non-positive amount"
    INSUFFICIENT_CONFIRMATIONS = "insufficient confirmations"
    DUPLICATE = "duplicate transaction"


class MessageOutcome(str, Enum):
    VALID = "VALID"
    FAILED = "FAILED"
    DUPLICATE = "DUPLICATE"
    CONTROL = "CONTROL"
    RETRIED = "RETRIED"
    DEAD_LETTERED = "DEAD_LETTERED"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
