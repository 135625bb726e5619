"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreatePaymentRequest,
    GenerateQRCodeRequest,
    PaymentResponse,
    QRCodeResponse,
    UpdatePaymentStatusRequest,
)

__all__ = [
    "app",
    "CreatePaymentRequest",
    "GenerateQRCodeRequest",
    "PaymentResponse",
    "QRCodeResponse",
    "UpdatePaymentStatusRequest",
]
