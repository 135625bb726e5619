"""
Payment lifecycle manager.

Owns the payment state machine:
1. Validate input
2. Resolve municipality and user
3. Create payment + initial audit entry in one transaction
4. Apply status transitions allowed by the transition table, each with
   exactly one audit entry, in one transaction
5. Serve read-only lookups and paginated history
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import structlog
from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from municipal_payments.config import Settings, get_settings
from municipal_payments.core.entities import (
    new_payment,
    new_payment_transaction,
    resolve_currency,
)
from municipal_payments.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentValidationError,
    StoreError,
)
from municipal_payments.core.validation import (
    coerce_amount,
    normalize_pagination,
    parse_uuid,
    validate_payment_request,
    validate_payment_status,
)
from municipal_payments.database.models import (
    Municipality,
    Payment,
    PaymentStatus,
    User,
    as_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PaymentStatus.PENDING.value: frozenset(
        {
            PaymentStatus.COMPLETED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.EXPIRED.value,
        }
    ),
    PaymentStatus.FAILED.value: frozenset(
        {PaymentStatus.PENDING.value, PaymentStatus.EXPIRED.value}
    ),
    PaymentStatus.COMPLETED.value: frozenset(),
    PaymentStatus.EXPIRED.value: frozenset({PaymentStatus.PENDING.value}),
}


@dataclass
class PaymentFilter:
    """Filters for payment history queries. ``None`` means unfiltered."""

    municipality_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    service_type: Optional[str] = None
    status: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


@dataclass
class PaymentPage:
    payments: List[Payment] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0


def payment_query() -> Select:
    """Select payments with the relationships every caller renders."""
    return select(Payment).options(
        selectinload(Payment.municipality),
        selectinload(Payment.user),
        selectinload(Payment.transactions),
    )


class PaymentLifecycleManager:
    """
    Payment lifecycle orchestrator.

    Every method takes the session it works in; multi-row writes are
    committed once and rolled back as a whole on failure.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize lifecycle manager.

        Args:
            settings: Optional settings (loaded from environment if omitted)
            clock: Optional callable returning the current UTC time
        """
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    @staticmethod
    def is_valid_transition(from_status: str, to_status: str) -> bool:
        """Check a status change against the transition table."""
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    async def _load_payment(self, db: AsyncSession, payment_id: uuid.UUID) -> Payment:
        """Reload a payment with fresh relationships after a write."""
        try:
            stmt = (
                payment_query()
                .where(Payment.id == payment_id)
                .execution_options(populate_existing=True)
            )
            result = await db.execute(stmt)
            return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error("payment_reload_failed", payment_id=str(payment_id), error=str(e))
            raise StoreError("Failed to load payment") from e

    async def create_payment(
        self,
        user_id: str | uuid.UUID,
        municipality_id: str | uuid.UUID,
        service_type: str,
        amount: Any,
        db: AsyncSession,
        currency: Optional[str] = None,
        due_date: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Create a pending payment and its initial audit entry atomically.

        Args:
            user_id: Paying user
            municipality_id: Municipality being paid
            service_type: waste_management or water_bill
            amount: Positive amount with at most two decimal places
            db: Database session
            currency: Optional currency (municipality default, then system default)
            due_date: Optional due date
            metadata: Optional caller details recorded on the audit entry

        Returns:
            Payment: The created payment with relationships loaded

        Raises:
            PaymentValidationError: If input validation fails
            NotFoundError: If the municipality or user does not exist
            StoreError: If the store rejects the write
        """
        issues = validate_payment_request(
            user_id, municipality_id, service_type, amount, currency
        )
        if issues:
            raise PaymentValidationError.from_issues(issues)

        user_uuid = parse_uuid(user_id, "userId")
        municipality_uuid = parse_uuid(municipality_id, "municipalityId")
        payment_amount = coerce_amount(amount)

        logger.info(
            "payment_creation_started",
            user_id=str(user_uuid),
            municipality_id=str(municipality_uuid),
            service_type=service_type,
            amount=str(payment_amount),
        )

        try:
            municipality = await db.get(Municipality, municipality_uuid)
            user = await db.get(User, user_uuid) if municipality is not None else None
        except SQLAlchemyError as e:
            logger.error("payment_reference_lookup_failed", error=str(e))
            raise StoreError("Failed to validate payment references") from e

        if municipality is None:
            raise NotFoundError(f"Municipality with ID '{municipality_uuid}' not found")
        if user is None:
            raise NotFoundError(f"User with ID '{user_uuid}' not found")

        resolved_currency = resolve_currency(
            currency, municipality, self.settings.default_currency
        )
        now = self.clock()
        payment = new_payment(
            user_id=user_uuid,
            municipality_id=municipality_uuid,
            service_type=service_type,
            amount=payment_amount,
            currency=resolved_currency,
            due_date=due_date,
            now=now,
        )
        payment_id = payment.id

        try:
            db.add(payment)
            await db.flush()
            db.add(
                new_payment_transaction(
                    payment_id, PaymentStatus.PENDING.value, metadata, now
                )
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("payment_creation_failed", payment_id=str(payment_id), error=str(e))
            raise StoreError("Failed to create payment") from e

        logger.info(
            "payment_created",
            payment_id=str(payment_id),
            currency=resolved_currency,
            status=PaymentStatus.PENDING.value,
        )

        return await self._load_payment(db, payment_id)

    async def get_payment(
        self,
        payment_id: str | uuid.UUID,
        db: AsyncSession,
        user_id: Optional[str | uuid.UUID] = None,
    ) -> Payment:
        """
        Get a payment by ID.

        Args:
            payment_id: Payment ID
            db: Database session
            user_id: When given, only a payment owned by this user is returned

        Raises:
            NotFoundError: If no (owned) payment has this ID
        """
        payment_uuid = parse_uuid(payment_id, "paymentId")
        stmt = payment_query().where(Payment.id == payment_uuid)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == parse_uuid(user_id, "userId"))

        try:
            result = await db.execute(stmt.execution_options(populate_existing=True))
            payment = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("payment_lookup_failed", payment_id=str(payment_uuid), error=str(e))
            raise StoreError("Failed to get payment") from e

        if payment is None:
            raise NotFoundError(f"Payment with ID '{payment_uuid}' not found")
        return payment

    async def get_payment_history(
        self,
        db: AsyncSession,
        filters: Optional[PaymentFilter] = None,
        limit: Any = None,
        offset: Any = None,
    ) -> PaymentPage:
        """
        Get payment history, newest first.

        Args:
            db: Database session
            filters: Optional filters
            limit: Page size (default 50, clamped to 100)
            offset: Page offset (default 0)

        Returns:
            PaymentPage: Matching payments with the total match count
        """
        filters = filters or PaymentFilter()
        page_limit, page_offset = normalize_pagination(limit, offset)

        conditions = []
        if filters.municipality_id is not None:
            conditions.append(Payment.municipality_id == filters.municipality_id)
        if filters.user_id is not None:
            conditions.append(Payment.user_id == filters.user_id)
        if filters.service_type is not None:
            conditions.append(Payment.service_type == filters.service_type)
        if filters.status is not None:
            conditions.append(Payment.status == filters.status)
        if filters.date_from is not None:
            conditions.append(Payment.created_at >= as_utc(filters.date_from))
        if filters.date_to is not None:
            conditions.append(Payment.created_at <= as_utc(filters.date_to))

        try:
            count_stmt = select(func.count()).select_from(Payment).where(*conditions)
            total = (await db.execute(count_stmt)).scalar_one()

            stmt = (
                payment_query()
                .where(*conditions)
                .order_by(Payment.created_at.desc())
                .limit(page_limit)
                .offset(page_offset)
            )
            payments = list((await db.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("payment_history_failed", error=str(e))
            raise StoreError("Failed to get payment history") from e

        return PaymentPage(payments=payments, total=total, limit=page_limit, offset=page_offset)

    async def get_payments_by_user(
        self, user_id: str | uuid.UUID, db: AsyncSession, limit: Any = None, offset: Any = None
    ) -> PaymentPage:
        filters = PaymentFilter(user_id=parse_uuid(user_id, "userId"))
        return await self.get_payment_history(db, filters, limit, offset)

    async def get_payments_by_municipality(
        self,
        municipality_id: str | uuid.UUID,
        db: AsyncSession,
        limit: Any = None,
        offset: Any = None,
    ) -> PaymentPage:
        filters = PaymentFilter(municipality_id=parse_uuid(municipality_id, "municipalityId"))
        return await self.get_payment_history(db, filters, limit, offset)

    async def update_status(
        self,
        payment_id: str | uuid.UUID,
        new_status: str,
        db: AsyncSession,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Transition a payment to a new status.

        The payment row is locked for the duration of the transaction. The
        status change and its audit entry commit together.

        Args:
            payment_id: Payment ID
            new_status: Target status
            db: Database session
            metadata: Optional transaction data recorded on the audit entry

        Returns:
            Payment: The updated payment with relationships loaded

        Raises:
            PaymentValidationError: If the status is unknown
            NotFoundError: If the payment does not exist
            InvalidTransitionError: If the transition table forbids the change
            StoreError: If the store rejects the write
        """
        issues = validate_payment_status(new_status)
        if issues:
            raise PaymentValidationError.from_issues(issues)
        payment_uuid = parse_uuid(payment_id, "paymentId")

        try:
            stmt = (
                select(Payment)
                .where(Payment.id == payment_uuid)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            payment = (await db.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("payment_lookup_failed", payment_id=str(payment_uuid), error=str(e))
            raise StoreError("Failed to get payment") from e

        if payment is None:
            await db.rollback()
            raise NotFoundError(f"Payment with ID '{payment_uuid}' not found")

        previous_status = payment.status
        if not self.is_valid_transition(previous_status, new_status):
            await db.rollback()
            logger.warning(
                "payment_transition_rejected",
                payment_id=str(payment_uuid),
                from_status=previous_status,
                to_status=new_status,
            )
            raise InvalidTransitionError(previous_status, new_status)

        now = self.clock()
        try:
            payment.status = new_status
            payment.updated_at = now
            if new_status == PaymentStatus.COMPLETED.value:
                payment.paid_at = now
            db.add(new_payment_transaction(payment_uuid, new_status, metadata, now))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "payment_status_update_failed",
                payment_id=str(payment_uuid),
                to_status=new_status,
                error=str(e),
            )
            raise StoreError("Failed to update payment status") from e

        logger.info(
            "payment_status_updated",
            payment_id=str(payment_uuid),
            from_status=previous_status,
            to_status=new_status,
        )

        return await self._load_payment(db, payment_uuid)
