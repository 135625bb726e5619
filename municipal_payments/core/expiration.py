"""
Expiration sweeper for stale pending payments.

Runs periodically to expire payments nobody redeemed:
- Pending payments older than the staleness window
- Pending payments holding a redemption code older than the window

Each sweep is one set-based update plus one audit entry per expired payment,
committed together. Re-running a sweep matches no additional rows.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from municipal_payments.config import Settings, get_settings
from municipal_payments.core.entities import new_payment_transaction
from municipal_payments.core.errors import StoreError
from municipal_payments.database.models import Payment, PaymentStatus, utcnow

logger = structlog.get_logger(__name__)


class ExpirationSweeper:
    """
    Batch-expires stale pending payments.

    The staleness window is global (``payment_staleness_hours``), independent
    of the per-municipality QR code window enforced at validation time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize expiration sweeper.

        Args:
            settings: Optional settings (loaded from environment if omitted)
            clock: Optional callable returning the current UTC time
        """
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    @property
    def staleness_window(self) -> timedelta:
        return timedelta(hours=self.settings.payment_staleness_hours)

    async def _expire(self, db: AsyncSession, reason: str, *criteria: Any) -> int:
        """
        Expire every pending payment created before the cutoff.

        Args:
            db: Database session
            reason: Recorded on each audit entry
            criteria: Extra WHERE conditions

        Returns:
            int: Number of payments expired
        """
        now = self.clock()
        cutoff = now - self.staleness_window

        try:
            stmt = (
                select(Payment.id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.created_at < cutoff,
                    *criteria,
                )
                .with_for_update(skip_locked=True)
            )
            payment_ids: List[Any] = list((await db.execute(stmt)).scalars().all())

            if payment_ids:
                await db.execute(
                    update(Payment)
                    .where(
                        Payment.id.in_(payment_ids),
                        Payment.status == PaymentStatus.PENDING.value,
                    )
                    .values(status=PaymentStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.add_all(
                    [
                        new_payment_transaction(
                            payment_id,
                            PaymentStatus.EXPIRED.value,
                            {"reason": reason},
                            now,
                        )
                        for payment_id in payment_ids
                    ]
                )
            await db.commit()

        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("expiration_sweep_failed", reason=reason, error=str(e))
            raise StoreError("Failed to expire stale payments") from e

        logger.info(
            "expiration_sweep_completed",
            reason=reason,
            cutoff=cutoff.isoformat(),
            expired_count=len(payment_ids),
        )
        return len(payment_ids)

    async def expire_stale_payments(self, db: AsyncSession) -> int:
        """Expire all stale pending payments."""
        return await self._expire(db, "stale_sweep")

    async def expire_stale_codes(self, db: AsyncSession) -> int:
        """Expire stale pending payments that have a redemption code bound."""
        return await self._expire(db, "stale_code_sweep", Payment.qr_code.is_not(None))
