"""
Domain error taxonomy.

Services raise these; the API layer maps ``status_code`` onto the HTTP
response. Idempotent no-ops are not errors and are reported as
``{"already_processed": True}`` results instead.
"""
from fastapi import status


class MarketplaceError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransition(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str, message: str | None = None):
        super().__init__(message or f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class InsufficientStock(ValidationError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT


