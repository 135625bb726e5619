"""
Health checks for liveness and readiness probes.

Readiness requires the ledger store to answer and the ledger tables to be
present; liveness only reports that the process is serving requests.
"""
import time
from typing import Any, Dict

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from municipal_payments.database.connection import get_session_factory
from municipal_payments.database.models import Payment, PaymentStatus

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""


class HealthCheck:
    """Dependency checks for the payments service."""

    async def check_database(self) -> Dict[str, Any]:
        """
        Round-trip the ledger store and read the pending backlog.

        Returns:
            Dict[str, Any]: Check result with latency and pending payment count

        Raises:
            HealthCheckError: If the store is unreachable or the schema is missing
        """
        started = time.perf_counter()
        try:
            async with get_session_factory()() as db:
                await db.execute(text("SELECT 1"))
                pending = (
                    await db.execute(
                        select(func.count())
                        .select_from(Payment)
                        .where(Payment.status == PaymentStatus.PENDING.value)
                    )
                ).scalar_one()
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError("Ledger store unavailable") from e

        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "pending_payments": pending,
        }

    async def check_all(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "error": str(e)}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive", "message": "Payments service is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready once every dependency check passes."""
        return await self.check_all()
