"""
API routes for municipal payments and QR code redemption.
"""
import time
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from municipal_payments.core.errors import (
    CodeExpiredError,
    CodeNoLongerValidError,
    InvalidCodeError,
    InvalidTransitionError,
)
from municipal_payments.core.expiration import ExpirationSweeper
from municipal_payments.core.payment_lifecycle import (
    PaymentFilter,
    PaymentLifecycleManager,
    PaymentPage,
)
from municipal_payments.core.qr_codes import QRCodeService
from municipal_payments.core.validation import parse_uuid
from municipal_payments.database.connection import get_db
from municipal_payments.monitoring.health import HealthCheck
from municipal_payments.monitoring.metrics import metrics

from .schemas import (
    CreatePaymentRequest,
    ExpirationSweepResponse,
    GenerateQRCodeRequest,
    HealthCheckResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    PaymentStatusResponse,
    QRCodeResponse,
    RegenerateQRCodeRequest,
    UpdatePaymentStatusRequest,
    ValidateQRCodeRequest,
    ValidateQRCodeResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
qr_router = APIRouter(prefix="/qr", tags=["qr"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
lifecycle_manager = PaymentLifecycleManager()
qr_code_service = QRCodeService()
expiration_sweeper = ExpirationSweeper()
health_check = HealthCheck()

USER_ID_HEADER = "X-User-ID"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 query value; unparsable values are ignored."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning("api_ignored_unparsable_date", value=value)
        return None


def _history_response(page: PaymentPage) -> PaymentHistoryResponse:
    return PaymentHistoryResponse(
        payments=[PaymentResponse.model_validate(payment) for payment in page.payments],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@payment_router.post(
    "/initiate",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a payment",
    description="Create a pending payment for a municipal service",
)
async def initiate_payment(
    request: CreatePaymentRequest,
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Initiate a payment on behalf of the calling user."""
    start_time = time.time()

    logger.info(
        "api_initiate_payment_request",
        user_id=x_user_id,
        municipality_id=request.municipality_id,
        service_type=request.service_type,
    )

    payment = await lifecycle_manager.create_payment(
        user_id=x_user_id or "",
        municipality_id=request.municipality_id,
        service_type=request.service_type,
        amount=request.amount,
        db=db,
        currency=request.currency,
        due_date=request.due_date,
        metadata=request.user_details,
    )

    metrics.record_payment_created(payment.service_type, payment.currency, float(payment.amount))
    logger.info(
        "api_initiate_payment_success",
        payment_id=str(payment.id),
        duration_seconds=time.time() - start_time,
    )

    return PaymentResponse.model_validate(payment)


@payment_router.get(
    "/history",
    response_model=PaymentHistoryResponse,
    summary="Payment history",
    description="List payments matching the filters, newest first",
)
async def get_payment_history(
    municipality_id: Optional[str] = Query(default=None, alias="municipalityId"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    service_type: Optional[str] = Query(default=None, alias="serviceType"),
    payment_status: Optional[str] = Query(default=None, alias="status"),
    date_from: Optional[str] = Query(default=None, alias="dateFrom"),
    date_to: Optional[str] = Query(default=None, alias="dateTo"),
    limit: Optional[str] = Query(default=None),
    offset: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> PaymentHistoryResponse:
    """Get payment history with optional filters."""
    filters = PaymentFilter(
        municipality_id=parse_uuid(municipality_id, "municipalityId") if municipality_id else None,
        user_id=parse_uuid(user_id, "userId") if user_id else None,
        service_type=service_type or None,
        status=payment_status or None,
        date_from=_parse_datetime(date_from),
        date_to=_parse_datetime(date_to),
    )
    page = await lifecycle_manager.get_payment_history(db, filters, limit, offset)
    return _history_response(page)


@payment_router.get(
    "/user",
    response_model=PaymentHistoryResponse,
    summary="Caller's payments",
    description="List the calling user's payments, newest first",
)
async def get_user_payments(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    limit: Optional[str] = Query(default=None),
    offset: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> PaymentHistoryResponse:
    page = await lifecycle_manager.get_payments_by_user(x_user_id or "", db, limit, offset)
    return _history_response(page)


@payment_router.get(
    "/municipality/{municipality_id}",
    response_model=PaymentHistoryResponse,
    summary="Municipality payments",
    description="List a municipality's payments, newest first",
)
async def get_municipality_payments(
    municipality_id: str,
    limit: Optional[str] = Query(default=None),
    offset: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> PaymentHistoryResponse:
    page = await lifecycle_manager.get_payments_by_municipality(
        municipality_id, db, limit, offset
    )
    return _history_response(page)


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment",
    description="Retrieve a payment with its audit trail",
)
async def get_payment(
    payment_id: str,
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Get a payment; scoped to the caller when X-User-ID is present."""
    payment = await lifecycle_manager.get_payment(payment_id, db, user_id=x_user_id)
    return PaymentResponse.model_validate(payment)


@payment_router.get(
    "/{payment_id}/status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Retrieve the current status of a payment",
)
async def get_payment_status(
    payment_id: str,
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    db: AsyncSession = Depends(get_db),
) -> PaymentStatusResponse:
    payment = await lifecycle_manager.get_payment(payment_id, db, user_id=x_user_id)
    return PaymentStatusResponse.model_validate(payment)


@payment_router.put(
    "/{payment_id}/status",
    response_model=PaymentResponse,
    summary="Update payment status",
    description="Apply a status transition allowed by the payment state machine",
)
async def update_payment_status(
    payment_id: str,
    request: UpdatePaymentStatusRequest,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Transition a payment and append an audit entry."""
    logger.info(
        "api_update_payment_status_request",
        payment_id=payment_id,
        to_status=request.status,
    )

    try:
        payment = await lifecycle_manager.update_status(
            payment_id, request.status, db, metadata=request.transaction_data
        )
    except InvalidTransitionError:
        metrics.record_status_transition(request.status, "rejected")
        raise

    metrics.record_status_transition(request.status, "applied")
    return PaymentResponse.model_validate(payment)


@qr_router.post(
    "/generate",
    response_model=QRCodeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate QR code",
    description="Bind a redemption code to a pending payment",
)
async def generate_qr_code(
    request: GenerateQRCodeRequest,
    db: AsyncSession = Depends(get_db),
) -> QRCodeResponse:
    artifact = await qr_code_service.generate_code(
        request.payment_id,
        db,
        expiration_minutes=request.expiration_mins,
        size=request.size,
    )
    metrics.record_qr_code_generated("generate")
    return QRCodeResponse.model_validate(artifact)


@qr_router.post(
    "/validate",
    response_model=ValidateQRCodeResponse,
    summary="Validate QR code",
    description="Check a scanned code; does not complete the payment",
)
async def validate_qr_code(
    request: ValidateQRCodeRequest,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    Validate a scanned redemption code.

    Redemption failures are answered with ``{"valid": false, "error": ...}``
    and the error's status code.
    """
    try:
        payment = await qr_code_service.validate_code(request.code, db)
    except (InvalidCodeError, CodeNoLongerValidError, CodeExpiredError) as e:
        metrics.record_qr_code_validation(e.code)
        logger.info("api_qr_code_rejected", reason=e.code)
        return JSONResponse(
            status_code=e.http_status,
            content={"valid": False, "error": e.to_dict()},
        )

    metrics.record_qr_code_validation("valid")
    return ValidateQRCodeResponse(valid=True, payment=PaymentResponse.model_validate(payment))


@qr_router.get(
    "/{code}/details",
    response_model=QRCodeResponse,
    response_model_exclude_none=True,
    summary="QR code details",
    description="Return the data embedded in a valid code, without an image",
)
async def get_qr_code_details(
    code: str,
    db: AsyncSession = Depends(get_db),
) -> QRCodeResponse:
    artifact = await qr_code_service.get_code_details(code, db)
    return QRCodeResponse.model_validate(artifact)


@qr_router.post(
    "/{payment_id}/regenerate",
    response_model=QRCodeResponse,
    summary="Regenerate QR code",
    description="Replace a pending payment's code; the previous code stops validating",
)
async def regenerate_qr_code(
    payment_id: str,
    request: Optional[RegenerateQRCodeRequest] = None,
    db: AsyncSession = Depends(get_db),
) -> QRCodeResponse:
    request = request or RegenerateQRCodeRequest()
    artifact = await qr_code_service.regenerate_code(
        payment_id,
        db,
        expiration_minutes=request.expiration_mins,
        size=request.size,
    )
    metrics.record_qr_code_generated("regenerate")
    return QRCodeResponse.model_validate(artifact)


@admin_router.post(
    "/expire",
    response_model=ExpirationSweepResponse,
    summary="Run expiration sweep",
    description="Expire pending payments older than the staleness window",
)
async def run_expiration_sweep(
    db: AsyncSession = Depends(get_db),
) -> ExpirationSweepResponse:
    start_time = time.time()
    expired = await expiration_sweeper.expire_stale_payments(db)
    metrics.record_expiration_sweep("stale_sweep", expired, time.time() - start_time)

    logger.info("api_expiration_sweep_completed", expired_count=expired)
    return ExpirationSweepResponse(expired_payments=expired)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
