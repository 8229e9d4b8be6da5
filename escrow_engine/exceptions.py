"""Domain exception hierarchy for structured error responses."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ConflictException(AppException):
    code = "CONFLICT"
    status_code = 409


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"
    status_code = 401


class ValidationException(AppException):
    code = "VALIDATION_ERROR"
    status_code = 422


class BusinessRuleException(AppException):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


class IllegalTransitionException(BusinessRuleException):
    code = "ILLEGAL_TRANSITION"
    status_code = 409


# Purchase preconditions. These are recoverable: the caller fixes the
# problem (e.g. saves an address) and submits a new purchase request.


class ShippingAddressRequiredException(ValidationException):
    code = "NO_SHIPPING_ADDRESS"


class SelfPurchaseException(ValidationException):
    code = "SELF_PURCHASE"


class ListingUnavailableException(ConflictException):
    code = "LISTING_UNAVAILABLE"


class InvariantViolationError(AssertionError):
    """A persisted record broke a data-integrity rule.

    Not an ``AppException``: this is an incident, never a user-facing error,
    and it must abort the surrounding database transaction.
    """

    def __init__(self, transaction_id, message: str) -> None:
        super().__init__(f"Transaction {transaction_id}: {message}")
        self.transaction_id = transaction_id
