"""Database package for the municipal payments ledger."""
from .connection import get_db, init_db
from .models import (
    Base,
    Currency,
    Municipality,
    Payment,
    PaymentStatus,
    PaymentTransaction,
    ServiceType,
    User,
    UserRole,
)

__all__ = [
    "Base",
    "Currency",
    "Municipality",
    "Payment",
    "PaymentStatus",
    "PaymentTransaction",
    "ServiceType",
    "User",
    "UserRole",
    "get_db",
    "init_db",
]
