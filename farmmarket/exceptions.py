"""
Domain errors raised by the service layer.

Each error carries the HTTP status the API boundary answers with; the
single exception handler in api.py does the translation.
"""

from fastapi import status


class FarmMarketError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FarmMarketError):
    """Malformed, missing or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST


class EmptyCartError(ValidationError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class NotFoundError(FarmMarketError):
    """Referenced entity does not exist or does not belong in this context."""

    status_code = status.HTTP_404_NOT_FOUND


class AuthorizationError(FarmMarketError):
    """Caller lacks the role or ownership the action requires."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(FarmMarketError):
    status_code = status.HTTP_409_CONFLICT


class ExternalServiceError(FarmMarketError):
    """The payment gateway failed. The message is safe to show to callers."""

    status_code = status.HTTP_502_BAD_GATEWAY
