"""
QR code issuance and redemption-time validation.

A redemption code is a random URL-safe token stored on the payment row. The
QR artifact handed to the resident encodes the payment metadata and expiry;
the image is rendered on demand and never stored.
"""
import base64
import io
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import qrcode
import structlog
from PIL import Image
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from municipal_payments.config import Settings, get_settings
from municipal_payments.core.entities import (
    new_payment_transaction,
    resolve_qr_expiration_minutes,
)
from municipal_payments.core.errors import (
    CodeExpiredError,
    CodeNoLongerValidError,
    ConflictError,
    InvalidCodeError,
    InvalidStateError,
    NotFoundError,
    PaymentValidationError,
    StoreError,
    ValidationIssue,
)
from municipal_payments.core.payment_lifecycle import payment_query
from municipal_payments.core.validation import parse_uuid, validate_qr_request
from municipal_payments.database.models import Payment, PaymentStatus, as_utc, utcnow

logger = structlog.get_logger(__name__)

CODE_ENTROPY_BYTES = 16


@dataclass(frozen=True)
class QRCodeData:
    """Payment metadata embedded in a QR code."""

    payment_id: uuid.UUID
    municipality_id: uuid.UUID
    amount: Decimal
    currency: str
    service_type: str
    expires_at: datetime

    @classmethod
    def for_payment(cls, payment: Payment, expires_at: datetime) -> "QRCodeData":
        return cls(
            payment_id=payment.id,
            municipality_id=payment.municipality_id,
            amount=payment.amount,
            currency=payment.currency,
            service_type=payment.service_type,
            expires_at=expires_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Wire form of the data, as encoded into the image."""
        return {
            "paymentId": str(self.payment_id),
            "municipalityId": str(self.municipality_id),
            "amount": float(self.amount),
            "currency": self.currency,
            "serviceType": self.service_type,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class QRArtifact:
    code: str
    data: QRCodeData
    image_url: Optional[str] = None


def generate_code_token() -> str:
    """Draw a random URL-safe redemption token."""
    return base64.urlsafe_b64encode(secrets.token_bytes(CODE_ENTROPY_BYTES)).decode("ascii")


def render_qr_image(payload: Dict[str, Any], size: int) -> str:
    """
    Render a payload as a square PNG QR code.

    Args:
        payload: JSON-serializable data to encode
        size: Edge length of the image in pixels

    Returns:
        str: ``data:image/png;base64,...`` URL
    """
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=4)
    qr.add_data(json.dumps(payload, separators=(",", ":")))
    qr.make(fit=True)

    image = qr.make_image(
        image_factory=PilImage, fill_color="black", back_color="white"
    ).get_image()
    image = image.convert("RGB").resize((size, size), Image.Resampling.NEAREST)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class QRCodeService:
    """
    Issues redemption codes for pending payments and validates them.

    Validation never completes a payment; the point of collection confirms
    receipt through a separate status update.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize QR code service.

        Args:
            settings: Optional settings (loaded from environment if omitted)
            clock: Optional callable returning the current UTC time
            token_factory: Optional redemption token generator
        """
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.token_factory = token_factory or generate_code_token

    async def _find_payment(self, db: AsyncSession, **criteria: Any) -> Optional[Payment]:
        stmt = payment_query().filter_by(**criteria).execution_options(populate_existing=True)
        try:
            return (await db.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("qr_payment_lookup_failed", error=str(e))
            raise StoreError("Failed to look up payment") from e

    async def _generate_unique_code(self, db: AsyncSession) -> str:
        """
        Draw tokens until one is not bound to any payment.

        Raises:
            ConflictError: If every attempt collided
        """
        max_attempts = self.settings.qr_code_max_attempts
        for attempt in range(1, max_attempts + 1):
            code = self.token_factory()
            try:
                stmt = select(func.count()).select_from(Payment).where(Payment.qr_code == code)
                existing = (await db.execute(stmt)).scalar_one()
            except SQLAlchemyError as e:
                logger.error("qr_code_uniqueness_check_failed", error=str(e))
                raise StoreError("Failed to check QR code uniqueness") from e

            if existing == 0:
                return code
            logger.warning("qr_code_collision", attempt=attempt)

        raise ConflictError(f"Failed to generate unique QR code after {max_attempts} attempts")

    def code_expiry(self, payment: Payment) -> datetime:
        """Redemption deadline: payment creation plus the municipality window."""
        minutes = resolve_qr_expiration_minutes(
            None, payment.municipality, self.settings.qr_default_expiration_minutes
        )
        return as_utc(payment.created_at) + timedelta(minutes=minutes)

    async def generate_code(
        self,
        payment_id: str | uuid.UUID,
        db: AsyncSession,
        expiration_minutes: Optional[int] = None,
        size: Optional[int] = None,
    ) -> QRArtifact:
        """
        Bind a fresh redemption code to a pending payment.

        Args:
            payment_id: Payment ID
            db: Database session
            expiration_minutes: Optional lifetime (municipality window, then 60),
                capped at the payment's redemption deadline
            size: Optional image size in pixels (default 256)

        Returns:
            QRArtifact: Code, embedded data and rendered image

        Raises:
            PaymentValidationError: If the parameters are out of range
            NotFoundError: If the payment does not exist
            InvalidStateError: If the payment is not pending
            CodeExpiredError: If the redemption window has already passed
            ConflictError: If no unique code could be bound
        """
        issues = validate_qr_request(expiration_minutes, size)
        if issues:
            raise PaymentValidationError.from_issues(issues)
        payment_uuid = parse_uuid(payment_id, "paymentId")

        payment = await self._find_payment(db, id=payment_uuid)
        if payment is None:
            raise NotFoundError(f"Payment with ID '{payment_uuid}' not found")
        if payment.status != PaymentStatus.PENDING.value:
            raise InvalidStateError(payment.status)

        minutes = resolve_qr_expiration_minutes(
            expiration_minutes,
            payment.municipality,
            self.settings.qr_default_expiration_minutes,
        )
        image_size = size if size and size > 0 else self.settings.qr_default_image_size

        now = self.clock()
        deadline = self.code_expiry(payment)
        if now > deadline:
            logger.warning(
                "qr_code_refused_window_passed",
                payment_id=str(payment_uuid),
                deadline=deadline.isoformat(),
            )
            raise CodeExpiredError("Payment redemption window has passed")

        code = await self._generate_unique_code(db)
        # The payload never promises more than validation will honour
        data = QRCodeData.for_payment(payment, min(now + timedelta(minutes=minutes), deadline))
        image_url = render_qr_image(data.to_payload(), image_size)

        try:
            payment.qr_code = code
            payment.updated_at = now
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.warning("qr_code_bind_conflict", payment_id=str(payment_uuid))
            raise ConflictError("QR code was bound concurrently, retry the request") from e
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("qr_code_bind_failed", payment_id=str(payment_uuid), error=str(e))
            raise StoreError("Failed to update payment with QR code") from e

        logger.info(
            "qr_code_generated",
            payment_id=str(payment_uuid),
            expiration_minutes=minutes,
            expires_at=data.expires_at.isoformat(),
            size=image_size,
        )

        return QRArtifact(code=code, data=data, image_url=image_url)

    async def regenerate_code(
        self,
        payment_id: str | uuid.UUID,
        db: AsyncSession,
        expiration_minutes: Optional[int] = None,
        size: Optional[int] = None,
    ) -> QRArtifact:
        """Replace the payment's code; the previous one stops validating."""
        logger.info("qr_code_regeneration_requested", payment_id=str(payment_id))
        return await self.generate_code(payment_id, db, expiration_minutes, size)

    async def _flag_expired(self, db: AsyncSession, payment: Payment) -> None:
        """
        Mark a payment expired after a late scan.

        Failures are logged and rolled back; the expiration sweep picks the
        payment up later.
        """
        # Read before any rollback expires the instance
        payment_id = payment.id
        now = self.clock()
        try:
            result = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .values(status=PaymentStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                db.add(
                    new_payment_transaction(
                        payment_id,
                        PaymentStatus.EXPIRED.value,
                        {"reason": "qr_code_expired"},
                        now,
                    )
                )
            await db.commit()
            logger.info("payment_expired_on_validation", payment_id=str(payment_id))
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(
                "payment_expiry_flag_failed", payment_id=str(payment_id), error=str(e)
            )

    async def validate_code(self, code: str, db: AsyncSession) -> Payment:
        """
        Validate a scanned redemption code.

        Args:
            code: Redemption code
            db: Database session

        Returns:
            Payment: The pending payment bound to the code

        Raises:
            PaymentValidationError: If the code is blank
            InvalidCodeError: If no payment carries the code
            CodeNoLongerValidError: If the payment is no longer pending
            CodeExpiredError: If the redemption window has passed
        """
        if not code or not code.strip():
            raise PaymentValidationError.from_issues(
                [ValidationIssue("code", "QR code is required")]
            )

        payment = await self._find_payment(db, qr_code=code)
        if payment is None:
            raise InvalidCodeError()
        if payment.status != PaymentStatus.PENDING.value:
            raise CodeNoLongerValidError(payment.status)

        if self.clock() > self.code_expiry(payment):
            await self._flag_expired(db, payment)
            raise CodeExpiredError()

        logger.info("qr_code_validated", payment_id=str(payment.id))
        return payment

    async def get_code_details(self, code: str, db: AsyncSession) -> QRArtifact:
        """Embedded data for a valid code, without rendering an image."""
        payment = await self.validate_code(code, db)
        data = QRCodeData.for_payment(payment, self.code_expiry(payment))
        return QRArtifact(code=code, data=data)
