"""
Unit tests for the expiration sweeper and worker.
"""
from decimal import Decimal
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import select

from municipal_payments.core.expiration import ExpirationSweeper
from municipal_payments.core.payment_lifecycle import PaymentLifecycleManager
from municipal_payments.core.qr_codes import QRCodeService
from municipal_payments.database.models import PaymentTransaction
from municipal_payments.workers.expiration_worker import run_expiration_sweep


@pytest.fixture
def manager(test_settings: Any, clock: Any) -> PaymentLifecycleManager:
    return PaymentLifecycleManager(settings=test_settings, clock=clock)


@pytest.fixture
def sweeper(test_settings: Any, clock: Any) -> ExpirationSweeper:
    return ExpirationSweeper(settings=test_settings, clock=clock)


@pytest.fixture
def create_payment(manager, test_db, municipality, resident):
    async def create():
        return await manager.create_payment(
            user_id=resident.id,
            municipality_id=municipality.id,
            service_type="waste_management",
            amount=Decimal("60.00"),
            db=test_db,
        )

    return create


async def _reasons(db, payment_id) -> list:
    stmt = select(PaymentTransaction).where(
        PaymentTransaction.payment_id == payment_id,
        PaymentTransaction.status == "expired",
    )
    return [entry.transaction_data["reason"] for entry in (await db.execute(stmt)).scalars()]


class TestExpirationSweeper:
    """Test suite for stale payment expiry."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expires_only_stale_pending_payments(
        self, sweeper, manager, test_db, create_payment, clock
    ) -> None:
        stale = await create_payment()
        completed = await create_payment()
        await manager.update_status(completed.id, "completed", test_db)
        clock.advance(hours=20)
        fresh = await create_payment()

        clock.advance(hours=5)
        expired = await sweeper.expire_stale_payments(test_db)

        assert expired == 1
        assert (await manager.get_payment(stale.id, test_db)).status == "expired"
        assert (await manager.get_payment(completed.id, test_db)).status == "completed"
        assert (await manager.get_payment(fresh.id, test_db)).status == "pending"
        assert await _reasons(test_db, stale.id) == ["stale_sweep"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(
        self, sweeper, test_db, create_payment, clock
    ) -> None:
        payment = await create_payment()
        await create_payment()
        clock.advance(hours=25)

        assert await sweeper.expire_stale_payments(test_db) == 2
        assert await sweeper.expire_stale_payments(test_db) == 0
        assert await _reasons(test_db, payment.id) == ["stale_sweep"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_code_sweep_requires_bound_code(
        self, sweeper, manager, test_settings, test_db, create_payment, clock
    ) -> None:
        with_code = await create_payment()
        without_code = await create_payment()
        await QRCodeService(test_settings, clock).generate_code(with_code.id, test_db)

        clock.advance(hours=25)
        assert await sweeper.expire_stale_codes(test_db) == 1

        assert (await manager.get_payment(with_code.id, test_db)).status == "expired"
        assert (await manager.get_payment(without_code.id, test_db)).status == "pending"
        assert await _reasons(test_db, with_code.id) == ["stale_code_sweep"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, sweeper, test_db, create_payment) -> None:
        await create_payment()
        assert await sweeper.expire_stale_payments(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_payment_can_be_reopened(
        self, sweeper, manager, test_db, create_payment, clock
    ) -> None:
        payment = await create_payment()
        clock.advance(hours=25)
        await sweeper.expire_stale_payments(test_db)
        clock.advance(minutes=1)

        reopened = await manager.update_status(payment.id, "pending", test_db)
        assert reopened.status == "pending"
        assert [t.status for t in reopened.transactions] == ["pending", "expired", "pending"]


class TestExpirationWorker:
    """Test suite for the worker's sweep run."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_expiration_sweep(
        self, sweeper, session_factory, create_payment, clock
    ) -> None:
        await create_payment()
        clock.advance(hours=25)

        with patch(
            "municipal_payments.database.connection.get_session_factory",
            return_value=session_factory,
        ):
            assert await run_expiration_sweep(sweeper) == 1
            assert await run_expiration_sweep(sweeper, scope="codes") == 0
