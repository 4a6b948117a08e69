"""
shared/exceptions.py
Domain errors raised by the booking and settlement services.

Services never raise HTTPException themselves; the app-wide exception
handler registered in main.py maps each error kind to its status code.
"""

from typing import Any, Dict, Optional

from fastapi import status


class DomainError(Exception):
    """Base class for every business error the services raise."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(DomainError):
    """The referenced entity does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(DomainError):
    """The actor lacks the role or ownership required for the action."""

    status_code = status.HTTP_403_FORBIDDEN


class BadRequestError(DomainError):
    """Illegal transition, missing precondition events, or invalid input."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(DomainError):
    """Duplicate record, or a concurrent writer got there first."""

    status_code = status.HTTP_409_CONFLICT


class PaymentGatewayError(DomainError):
    """The payment gateway refused or failed the request."""

    status_code = status.HTTP_502_BAD_GATEWAY
