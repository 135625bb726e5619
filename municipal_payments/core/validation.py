"""
Input validation for payment and QR code operations.

Each validator is a plain function over typed arguments that returns the list
of failed rules. An empty list means the input is valid. Call sites decide
whether to raise (usually via ``PaymentValidationError.from_issues``).
"""
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from municipal_payments.core.errors import PaymentValidationError, ValidationIssue
from municipal_payments.database.models import Currency, PaymentStatus, ServiceType

MAX_AMOUNT = Decimal("999999.99")

MIN_QR_EXPIRATION_MINUTES = 1
MAX_QR_EXPIRATION_MINUTES = 1440

MIN_QR_IMAGE_SIZE = 64
MAX_QR_IMAGE_SIZE = 1024

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100
DEFAULT_PAGE_OFFSET = 0

VALID_PAYMENT_METHODS = frozenset(
    {"credit_card", "debit_card", "bank_transfer", "cash", "mobile_payment"}
)

_SERVICE_TYPES = {member.value for member in ServiceType}
_CURRENCIES = {member.value for member in Currency}
_STATUSES = {member.value for member in PaymentStatus}


def coerce_amount(value: Any) -> Optional[Decimal]:
    """Convert an amount to Decimal, or None when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_amount(value: Any) -> List[ValidationIssue]:
    amount = coerce_amount(value)
    if amount is None:
        return [ValidationIssue("amount", "Amount must be a number", value)]
    if amount <= 0:
        return [ValidationIssue("amount", "Amount must be greater than 0", str(amount))]
    if amount > MAX_AMOUNT:
        return [ValidationIssue("amount", f"Amount must not exceed {MAX_AMOUNT}", str(amount))]
    if amount != amount.quantize(Decimal("0.01")):
        return [
            ValidationIssue("amount", "Amount must have at most 2 decimal places", str(amount))
        ]
    return []


def validate_service_type(value: Any) -> List[ValidationIssue]:
    if not value:
        return [ValidationIssue("serviceType", "Service type is required")]
    if value not in _SERVICE_TYPES:
        return [ValidationIssue("serviceType", f"Invalid service type: {value}", value)]
    return []


def validate_currency(value: Any) -> List[ValidationIssue]:
    if value not in _CURRENCIES:
        return [ValidationIssue("currency", f"Invalid currency: {value}", value)]
    return []


def validate_payment_status(value: Any) -> List[ValidationIssue]:
    if not value:
        return [ValidationIssue("status", "Status is required")]
    if value not in _STATUSES:
        return [ValidationIssue("status", f"Invalid payment status: {value}", value)]
    return []


def validate_payment_request(
    user_id: Any,
    municipality_id: Any,
    service_type: Any,
    amount: Any,
    currency: Optional[str] = None,
) -> List[ValidationIssue]:
    """Collect every failed rule of a payment initiation request."""
    issues: List[ValidationIssue] = []
    if not user_id or not str(user_id).strip():
        issues.append(ValidationIssue("userId", "User ID is required"))
    if not municipality_id or not str(municipality_id).strip():
        issues.append(ValidationIssue("municipalityId", "Municipality ID is required"))
    issues.extend(validate_service_type(service_type))
    issues.extend(validate_amount(amount))
    if currency:
        issues.extend(validate_currency(currency))
    return issues


def validate_payment_config(config: Optional[Dict[str, Any]]) -> List[ValidationIssue]:
    """Validate a municipality payment configuration document."""
    if config is None:
        return []

    issues: List[ValidationIssue] = []
    currency = config.get("currency")
    if currency not in _CURRENCIES:
        issues.append(
            ValidationIssue("paymentConfig.currency", f"Invalid currency: {currency}", currency)
        )

    methods = config.get("paymentMethods") or []
    if not methods:
        issues.append(
            ValidationIssue("paymentConfig.paymentMethods", "At least one payment method is required")
        )
    for method in methods:
        if method not in VALID_PAYMENT_METHODS:
            issues.append(
                ValidationIssue(
                    "paymentConfig.paymentMethods", f"Invalid payment method: {method}", method
                )
            )

    minutes = config.get("qrCodeExpirationMinutes")
    if (
        not isinstance(minutes, int)
        or isinstance(minutes, bool)
        or not MIN_QR_EXPIRATION_MINUTES <= minutes <= MAX_QR_EXPIRATION_MINUTES
    ):
        issues.append(
            ValidationIssue(
                "paymentConfig.qrCodeExpirationMinutes",
                "QR code expiration must be between 1 and 1440 minutes",
                minutes,
            )
        )

    fee = config.get("wasteManagementFee")
    if fee is not None:
        fee_amount = coerce_amount(fee)
        if fee_amount is None or fee_amount < 0:
            issues.append(
                ValidationIssue(
                    "paymentConfig.wasteManagementFee", "Waste management fee cannot be negative", fee
                )
            )
    return issues


def validate_qr_request(
    expiration_minutes: Optional[int], size: Optional[int]
) -> List[ValidationIssue]:
    """
    Validate optional QR generation parameters.

    Non-positive values mean "use the default" and are accepted.
    """
    issues: List[ValidationIssue] = []
    if expiration_minutes is not None and expiration_minutes > MAX_QR_EXPIRATION_MINUTES:
        issues.append(
            ValidationIssue(
                "expirationMins",
                f"Expiration must not exceed {MAX_QR_EXPIRATION_MINUTES} minutes",
                expiration_minutes,
            )
        )
    if size is not None and size > 0 and not MIN_QR_IMAGE_SIZE <= size <= MAX_QR_IMAGE_SIZE:
        issues.append(
            ValidationIssue(
                "size",
                f"Size must be between {MIN_QR_IMAGE_SIZE} and {MAX_QR_IMAGE_SIZE} pixels",
                size,
            )
        )
    return issues


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_pagination(limit: Any = None, offset: Any = None) -> Tuple[int, int]:
    """
    Normalize caller-supplied pagination.

    Unparsable or out-of-range values fall back to the defaults; the limit is
    clamped to ``MAX_PAGE_LIMIT``.
    """
    parsed_limit = _parse_int(limit)
    if parsed_limit is None or parsed_limit <= 0:
        parsed_limit = DEFAULT_PAGE_LIMIT
    parsed_limit = min(parsed_limit, MAX_PAGE_LIMIT)

    parsed_offset = _parse_int(offset)
    if parsed_offset is None or parsed_offset < 0:
        parsed_offset = DEFAULT_PAGE_OFFSET

    return parsed_limit, parsed_offset


def parse_uuid(value: Any, field: str) -> uuid.UUID:
    """Parse an identifier, raising PaymentValidationError when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise PaymentValidationError.from_issues(
            [ValidationIssue(field, "Must be a valid UUID", value)]
        )
