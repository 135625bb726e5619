"""Core payment lifecycle and QR redemption logic."""
from .expiration import ExpirationSweeper
from .payment_lifecycle import PaymentFilter, PaymentLifecycleManager, PaymentPage
from .qr_codes import QRArtifact, QRCodeData, QRCodeService

__all__ = [
    "ExpirationSweeper",
    "PaymentFilter",
    "PaymentLifecycleManager",
    "PaymentPage",
    "QRArtifact",
    "QRCodeData",
    "QRCodeService",
]
