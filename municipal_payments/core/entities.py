"""
Entity factories and municipality configuration lookups.

Defaults (pending status, currency, timestamps) are applied here, before an
entity reaches the session, rather than in ORM hooks.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from municipal_payments.core.errors import PaymentValidationError
from municipal_payments.core.validation import (
    MAX_QR_EXPIRATION_MINUTES,
    MIN_QR_EXPIRATION_MINUTES,
    validate_payment_config,
)
from municipal_payments.database.models import (
    Currency,
    Municipality,
    Payment,
    PaymentStatus,
    PaymentTransaction,
    User,
    UserRole,
    as_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)


def new_municipality(
    name: str,
    code: str,
    payment_config: Optional[Dict[str, Any]] = None,
    contact_email: Optional[str] = None,
) -> Municipality:
    """
    Build a municipality, defaulting the configured currency to USD.

    Raises:
        PaymentValidationError: If the payment configuration is invalid
    """
    config = dict(payment_config) if payment_config is not None else None
    if config is not None and not config.get("currency"):
        config["currency"] = Currency.USD.value

    issues = validate_payment_config(config)
    if issues:
        raise PaymentValidationError.from_issues(issues)

    now = utcnow()
    return Municipality(
        id=uuid.uuid4(),
        name=name,
        code=code,
        contact_email=contact_email,
        payment_config=config,
        created_at=now,
        updated_at=now,
    )


def new_user(
    email: str, first_name: str, last_name: str, role: Optional[str] = None
) -> User:
    now = utcnow()
    return User(
        id=uuid.uuid4(),
        email=email,
        first_name=first_name,
        last_name=last_name,
        role=role or UserRole.RESIDENT.value,
        created_at=now,
        updated_at=now,
    )


def new_payment(
    user_id: uuid.UUID,
    municipality_id: uuid.UUID,
    service_type: str,
    amount: Decimal,
    currency: str,
    due_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Build a pending payment with no redemption code bound."""
    now = now or utcnow()
    return Payment(
        id=uuid.uuid4(),
        user_id=user_id,
        municipality_id=municipality_id,
        service_type=service_type,
        amount=amount,
        currency=currency,
        status=PaymentStatus.PENDING.value,
        qr_code=None,
        due_date=as_utc(due_date) if due_date else None,
        paid_at=None,
        created_at=now,
        updated_at=now,
    )


def new_payment_transaction(
    payment_id: uuid.UUID,
    status: str,
    transaction_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> PaymentTransaction:
    return PaymentTransaction(
        id=uuid.uuid4(),
        payment_id=payment_id,
        status=status,
        transaction_data=transaction_data,
        created_at=now or utcnow(),
    )


def resolve_currency(
    requested: Optional[str], municipality: Municipality, default: str
) -> str:
    """
    Pick the payment currency.

    Order: explicit request value (already validated), municipality default,
    system default.
    """
    if requested:
        return requested
    config = municipality.payment_config or {}
    configured = config.get("currency")
    if configured in {member.value for member in Currency}:
        return configured
    return default


def resolve_qr_expiration_minutes(
    requested: Optional[int], municipality: Optional[Municipality], default: int
) -> int:
    """
    Pick the QR code lifetime in minutes.

    Order: explicit positive request value, municipality window, default.
    A municipality window outside 1-1440 is ignored.
    """
    if requested is not None and requested > 0:
        return requested
    config = (municipality.payment_config if municipality is not None else None) or {}
    configured = config.get("qrCodeExpirationMinutes")
    if isinstance(configured, int) and not isinstance(configured, bool):
        if MIN_QR_EXPIRATION_MINUTES <= configured <= MAX_QR_EXPIRATION_MINUTES:
            return configured
        logger.warning(
            "municipality_qr_expiration_out_of_range",
            municipality_id=str(municipality.id),
            configured_minutes=configured,
        )
    return default
