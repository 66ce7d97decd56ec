"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
Every error maps to an HTTP status and a stable machine-readable code,
which the API boundary renders as a JSON error body.
"""

from decimal import Decimal
from uuid import UUID

from pageassist.services.pricing import present_amount


class PageAssistError(Exception):
    """Base exception for all application errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def extra(self) -> dict[str, str | float]:
        """Additional fields rendered into the error body."""
        return {}


class AuthenticationError(PageAssistError):
    """Raised when a credential is missing, malformed, or does not match."""

    status_code = 401
    error_code = "unauthenticated"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class ForbiddenError(PageAssistError):
    """Raised for blocked accounts and non-admins on admin routes."""

    status_code = 403
    error_code = "forbidden"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Forbidden: {reason}")


class PaymentRequiredError(PageAssistError):
    """Raised when an API-key caller has no positive balance."""

    status_code = 402
    error_code = "payment_required"

    def __init__(self, balance: Decimal) -> None:
        self.balance = balance
        super().__init__(f"Payment required. Balance: {balance}")

    def extra(self) -> dict[str, str | float]:
        return {"balance": present_amount(self.balance)}


class InsufficientBalanceError(PaymentRequiredError):
    """Raised when a debit would drive the balance negative."""

    error_code = "insufficient_balance"

    def __init__(self, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        PageAssistError.__init__(
            self, f"Insufficient balance. Available: {available}, Required: {required}"
        )

    def extra(self) -> dict[str, str | float]:
        return {
            "required": present_amount(self.required),
            "available": present_amount(self.available),
        }


class ValidationFailedError(PageAssistError):
    """Raised when a request body is malformed (first violation only)."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)

    def extra(self) -> dict[str, str | float]:
        return {"field": self.field} if self.field else {}


class NotFoundError(PageAssistError):
    """Raised for unknown resources and resources owned by someone else."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"{resource} not found")


class UserNotFoundError(NotFoundError):
    """Raised when a user id does not resolve."""

    def __init__(self, user_id: UUID | str) -> None:
        self.user_id = user_id
        super().__init__("User")


class DuplicateIdentityError(PageAssistError):
    """Raised when registering an identity that already exists."""

    status_code = 409
    error_code = "identity_exists"

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"User already exists: {identity}")


class UpstreamError(PageAssistError):
    """Raised when the LLM gateway fails or times out. Never retried."""

    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Upstream error: {message}")


class WriteVerificationError(PageAssistError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PageAssistError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
