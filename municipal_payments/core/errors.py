"""
Error taxonomy for the payment core.

Every failure the core reports is one of these types. The HTTP boundary maps
each type to one status code and response shape via ``code`` and
``http_status``; nothing is classified by message text.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ValidationIssue:
    """A single failed validation rule."""

    field: str
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    code = "payment_error"
    http_status = 500

    def to_dict(self) -> Dict[str, Any]:
        """Stable error body for API responses."""
        return {"code": self.code, "message": str(self)}


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    code = "invalid_input"
    http_status = 400

    def __init__(self, message: str, issues: Optional[List[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = list(issues or [])

    @classmethod
    def from_issues(cls, issues: List[ValidationIssue]) -> "PaymentValidationError":
        message = "; ".join(f"{issue.field}: {issue.message}" for issue in issues)
        return cls(message or "Invalid input", issues)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.issues:
            body["details"] = [issue.to_dict() for issue in self.issues]
        return body


class NotFoundError(PaymentError):
    """Raised when a municipality, user or payment does not exist."""

    code = "not_found"
    http_status = 404


class InvalidTransitionError(PaymentError):
    """Raised when a status change is not allowed by the transition table."""

    code = "invalid_transition"
    http_status = 400

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid status transition from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class InvalidStateError(PaymentError):
    """Raised when a QR code is requested for a payment that is not pending."""

    code = "invalid_state"
    http_status = 400

    def __init__(self, status: str):
        super().__init__(f"Cannot issue QR code for payment with status '{status}'")
        self.status = status


class InvalidCodeError(PaymentError):
    """Raised when no payment carries the presented redemption code."""

    code = "invalid_code"
    http_status = 404

    def __init__(self, message: str = "Invalid QR code"):
        super().__init__(message)


class CodeNoLongerValidError(PaymentError):
    """Raised when the code's payment has left the pending state."""

    code = "code_no_longer_valid"
    http_status = 409

    def __init__(self, status: str):
        super().__init__(f"QR code is no longer valid - payment status: {status}")
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["status"] = self.status
        return body


class CodeExpiredError(PaymentError):
    """Raised when the code's expiration window has passed."""

    code = "code_expired"
    http_status = 410

    def __init__(self, message: str = "QR code has expired"):
        super().__init__(message)


class ConflictError(PaymentError):
    """Raised when a unique redemption code cannot be bound."""

    code = "conflict"
    http_status = 409


class StoreError(PaymentError):
    """
    Raised when the ledger store fails.

    The message names the operation only; the underlying driver error is
    chained as ``__cause__`` and logged, never returned to callers.
    """

    code = "store_error"
    http_status = 500
