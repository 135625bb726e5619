"""
Pydantic schemas for API request/response models.

All payloads use camelCase keys on the wire.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from municipal_payments.database.models import as_utc

UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class APIModel(BaseModel):
    """Base schema with camelCase aliases and ORM attribute loading."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class CreatePaymentRequest(APIModel):
    """Request schema for initiating a payment."""

    municipality_id: str = Field(default="", description="Municipality being paid")
    service_type: str = Field(default="", description="waste_management or water_bill")
    amount: Optional[Decimal] = Field(default=None, description="Amount, at most 2 decimals")
    currency: Optional[str] = Field(default=None, description="USD, EUR or GBP")
    due_date: Optional[UTCDateTime] = Field(default=None, description="Optional due date")
    user_details: Optional[Dict[str, Any]] = Field(
        default=None, description="Details recorded on the initial transaction"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "municipalityId": "123e4567-e89b-12d3-a456-426614174000",
                    "serviceType": "waste_management",
                    "amount": 100.00,
                    "currency": "EUR",
                    "userDetails": {"address": "12 Main Street"},
                }
            ]
        }
    }


class UpdatePaymentStatusRequest(APIModel):
    """Request schema for a status transition."""

    status: str = Field(default="", description="Target status")
    transaction_data: Optional[Dict[str, Any]] = Field(
        default=None, description="Data recorded on the transaction entry"
    )


class GenerateQRCodeRequest(APIModel):
    """Request schema for QR code generation."""

    payment_id: str = Field(default="", description="Pending payment to bind a code to")
    expiration_mins: Optional[int] = Field(default=None, description="Code lifetime in minutes")
    size: Optional[int] = Field(default=None, description="Image size in pixels")


class RegenerateQRCodeRequest(APIModel):
    """Optional parameters for QR code regeneration."""

    expiration_mins: Optional[int] = Field(default=None, description="Code lifetime in minutes")
    size: Optional[int] = Field(default=None, description="Image size in pixels")


class ValidateQRCodeRequest(APIModel):
    """Request schema for QR code validation."""

    code: str = Field(default="", description="Scanned redemption code")


class MunicipalitySummary(APIModel):
    id: uuid.UUID
    name: str
    code: str


class UserSummary(APIModel):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str


class PaymentTransactionResponse(APIModel):
    """Audit trail entry."""

    id: uuid.UUID
    payment_id: uuid.UUID
    status: str
    transaction_data: Optional[Dict[str, Any]] = None
    created_at: UTCDateTime


class PaymentResponse(APIModel):
    """Response schema for a payment."""

    id: uuid.UUID = Field(..., description="Payment ID")
    municipality_id: uuid.UUID
    user_id: uuid.UUID
    service_type: str
    amount: float
    currency: str
    status: str
    qr_code: Optional[str] = None
    due_date: Optional[UTCDateTime] = None
    paid_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime
    updated_at: UTCDateTime
    municipality: Optional[MunicipalitySummary] = None
    user: Optional[UserSummary] = None
    transactions: List[PaymentTransactionResponse] = Field(default_factory=list)


class PaymentStatusResponse(APIModel):
    """Response schema for payment status."""

    id: uuid.UUID
    status: str
    amount: float
    currency: str
    created_at: UTCDateTime
    paid_at: Optional[UTCDateTime] = None


class PaymentHistoryResponse(APIModel):
    """Paginated payment list."""

    payments: List[PaymentResponse]
    total: int
    limit: int
    offset: int


class QRCodeDataResponse(APIModel):
    """Payment metadata embedded in a QR code."""

    payment_id: uuid.UUID
    municipality_id: uuid.UUID
    amount: float
    currency: str
    service_type: str
    expires_at: UTCDateTime


class QRCodeResponse(APIModel):
    """Response schema for a QR artifact."""

    code: str
    data: QRCodeDataResponse
    image_url: Optional[str] = Field(default=None, description="PNG data URL")


class ValidateQRCodeResponse(APIModel):
    valid: bool
    payment: Optional[PaymentResponse] = None


class ExpirationSweepResponse(APIModel):
    expired_payments: int = Field(..., description="Payments expired by this sweep")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
