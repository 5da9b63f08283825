"""
Error taxonomy for CareLoop services.

Services raise these; the API layer maps them to HTTP responses through the
exception handler registered in careloop.main, and the worker uses the class
to decide whether a failed job is retried.
"""
from fastapi import status


class CareLoopError(Exception):
    """Base class for domain errors."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CareLoopError):
    """Input violates a domain constraint."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(CareLoopError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(CareLoopError):
    """Operation is not allowed in the entity's current state."""
    status_code = status.HTTP_409_CONFLICT


class AttemptsExhaustedError(ConflictError):
    pass


class ConfigurationError(CareLoopError):
    """Required protocol configuration is missing. Needs operator attention."""
    status_code = status.HTTP_424_FAILED_DEPENDENCY


class ProviderError(CareLoopError):
    """An external provider (notifications, AI service) failed."""
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class ConcurrencyError(CareLoopError):
    """A concurrent writer won a uniqueness race that could not be resolved."""
    status_code = status.HTTP_409_CONFLICT
    retryable = True
