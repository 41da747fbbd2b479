class DomainException(Exception):
    def __init__(self, message: str, code: str = "DOMAIN_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class TransactionValidationError(DomainException):
    def __init__(self, message: str = "Invalid transaction"):
        super().__init__(message, code="INVALID_TRANSACTION")


class EnvelopeDecodeError(DomainException):
    def __init__(self, message: str = "Invalid message envelope"):
        super().__init__(message, code="INVALID_ENVELOPE")


class FileProcessingError(DomainException):
    def __init__(self, message: str = "Could not process transaction file", file_name: str = ""):
        self.file_name = file_name
        super().__init__(message, code="FILE_PROCESSING_ERROR")


class PersistenceError(DomainException):
    def __init__(self, message: str = "Batch persistence failed"):
        super().__init__(message, code="PERSISTENCE_ERROR")


class EncryptionError(DomainException):
    def __init__(self, message: str = "Field could not be decrypted"):
        super().__init__(message, code="ENCRYPTION_ERROR")


class BrokerConnectionError(DomainException):
    def __init__(self, message: str = "Message broker unreachable"):
        super().__init__(message, code="BROKER_UNAVAILABLE")


class DatabaseConnectionError(DomainException):
    def __init__(self, message: str = "Database unreachable"):
        super().__init__(message, code="DATABASE_UNAVAILABLE")
