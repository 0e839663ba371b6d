"""
Custom exceptions for shadowrepl
"""


class ShadowReplError(Exception):
    """Base exception for shadowrepl operations"""
    pass


class ConfigurationError(ShadowReplError):
    """Invalid or conflicting configuration, fatal before processing starts"""
    pass


class ConnectionError(ShadowReplError):
    """Database connection errors"""
    pass


class MappingNotFoundError(ShadowReplError):
    """Lookup of a table or column unknown to the schema mapping"""
    pass


class TransformError(ShadowReplError):
    """Data transformation errors"""
    pass


class WriteError(ShadowReplError):
    """Failure while applying a mutation to the destination"""

    retryable = False

    def __init__(self, message: str, error_code: int = None):
        super().__init__(message)
        self.error_code = error_code


class TransientWriteError(WriteError):
    """Contention, timeout or throttling; retried through the DLQ"""

    retryable = True


class PermanentWriteError(WriteError):
    """Constraint violation, malformed mutation or type mismatch"""

    retryable = False


class DeadLetterQueueError(ShadowReplError):
    """Dead-letter queue storage errors"""
    pass
