"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries the status code it maps to, so the FastAPI exception
handler in main.py is a single function.
"""
from typing import List, Optional


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400

    def __init__(self, errors: List[str], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = list(errors)


class AuthError(MarketplaceError):
    status_code = 401


class ForbiddenError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class ConflictError(MarketplaceError):
    status_code = 409


class InvalidTransitionError(MarketplaceError):
    status_code = 409

    def __init__(self, current: str, requested: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move request from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class InternalError(MarketplaceError):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
