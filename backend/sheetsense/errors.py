"""Domain exceptions raised by SheetSense services.

Routes translate these into HTTP responses; services never build
HTTP responses themselves.
"""


class SheetSenseError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SheetSenseError):
    status_code = 404


class ForbiddenError(SheetSenseError):
    status_code = 403


class ConflictError(SheetSenseError):
    status_code = 409


class ValidationFailure(SheetSenseError):
    status_code = 400


class ExternalServiceError(SheetSenseError):
    """Vision/LLM call failed or returned something unusable."""

    status_code = 502


class AIProcessingError(SheetSenseError):
    """Background AI correction could not be completed."""


class StaleWriteError(ConflictError):
    """Optimistic save lost the race against a concurrent writer."""
