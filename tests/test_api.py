"""
Integration tests for the HTTP API.

Requests run through the ASGI app against the in-memory test database.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from municipal_payments import __version__
from municipal_payments.core.entities import new_payment, new_payment_transaction
from municipal_payments.database.models import utcnow


def _headers(user: Any) -> Dict[str, str]:
    return {"X-User-ID": str(user.id)}


async def _initiate(client: AsyncClient, municipality: Any, user: Any, **overrides: Any) -> Any:
    body = {
        "municipalityId": str(municipality.id),
        "serviceType": "waste_management",
        "amount": 100.00,
        "userDetails": {"address": "742 Evergreen Terrace"},
    }
    body.update(overrides)
    return await client.post("/payments/initiate", json=body, headers=_headers(user))


@pytest.fixture
def stale_payment(test_db, municipality, resident):
    """A pending payment with a bound code, created two days ago."""

    async def create(code: str = "c3RhbGUtY29kZS0xMjM0NQ=="):
        created_at = utcnow() - timedelta(days=2)
        payment = new_payment(
            user_id=resident.id,
            municipality_id=municipality.id,
            service_type="water_bill",
            amount=Decimal("20.00"),
            currency="EUR",
            now=created_at,
        )
        payment.qr_code = code
        test_db.add(payment)
        await test_db.flush()
        test_db.add(new_payment_transaction(payment.id, "pending", None, created_at))
        await test_db.commit()
        return payment

    return create


class TestPaymentEndpoints:
    """Integration tests for payment endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_payment(self, client, municipality, resident) -> None:
        response = await _initiate(client, municipality, resident)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["currency"] == "EUR"
        assert data["amount"] == 100.0
        assert data["serviceType"] == "waste_management"
        assert data["municipalityId"] == str(municipality.id)
        assert data["userId"] == str(resident.id)
        assert data["qrCode"] is None
        assert data["paidAt"] is None
        assert data["municipality"]["code"] == "SPR"
        assert data["user"]["firstName"] == "Marge"
        assert len(data["transactions"]) == 1
        assert data["transactions"][0]["transactionData"] == {
            "address": "742 Evergreen Terrace"
        }
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_requires_user_header(self, client, municipality) -> None:
        response = await client.post(
            "/payments/initiate",
            json={
                "municipalityId": str(municipality.id),
                "serviceType": "water_bill",
                "amount": 10,
            },
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_input"
        assert [d["field"] for d in error["details"]] == ["userId"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_rejects_non_positive_amount(
        self, client, municipality, resident
    ) -> None:
        response = await _initiate(client, municipality, resident, amount=0)

        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "amount"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_malformed_body(self, client, municipality, resident) -> None:
        response = await _initiate(client, municipality, resident, amount="a lot")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_unknown_municipality(self, client, resident) -> None:
        response = await client.post(
            "/payments/initiate",
            json={
                "municipalityId": "6f1c2b9e-3d4a-4c5b-8e7f-0a1b2c3d4e5f",
                "serviceType": "water_bill",
                "amount": 10,
            },
            headers=_headers(resident),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment_is_owner_scoped(
        self, client, municipality, resident, other_resident
    ) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]

        own = await client.get(f"/payments/{payment_id}", headers=_headers(resident))
        assert own.status_code == 200
        assert own.json()["id"] == payment_id

        foreign = await client.get(f"/payments/{payment_id}", headers=_headers(other_resident))
        assert foreign.status_code == 404

        unscoped = await client.get(f"/payments/{payment_id}")
        assert unscoped.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_update_and_lookup(self, client, municipality, resident) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]

        response = await client.put(
            f"/payments/{payment_id}/status",
            json={"status": "completed", "transactionData": {"collector": "desk-3"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["paidAt"] is not None
        assert [t["status"] for t in data["transactions"]] == ["pending", "completed"]

        status_response = await client.get(f"/payments/{payment_id}/status")
        assert status_response.status_code == 200
        assert set(status_response.json()) == {
            "id",
            "status",
            "amount",
            "currency",
            "createdAt",
            "paidAt",
        }

        rejected = await client.put(f"/payments/{payment_id}/status", json={"status": "pending"})
        assert rejected.status_code == 400
        assert rejected.json()["error"]["code"] == "invalid_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_update_unknown_status(self, client, municipality, resident) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]

        response = await client.put(f"/payments/{payment_id}/status", json={"status": "refunded"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_listings(
        self, client, municipality, unconfigured_municipality, resident, other_resident
    ) -> None:
        await _initiate(client, municipality, resident)
        await _initiate(client, municipality, resident, serviceType="water_bill")
        await _initiate(client, unconfigured_municipality, other_resident)

        history = await client.get("/payments/history", params={"limit": 2})
        assert history.status_code == 200
        data = history.json()
        assert data["total"] == 3
        assert data["limit"] == 2
        assert data["offset"] == 0
        assert len(data["payments"]) == 2

        filtered = await client.get(
            "/payments/history",
            params={"municipalityId": str(municipality.id), "serviceType": "water_bill"},
        )
        assert filtered.json()["total"] == 1

        mine = await client.get("/payments/user", headers=_headers(resident))
        assert mine.json()["total"] == 2

        by_municipality = await client.get(
            f"/payments/municipality/{unconfigured_municipality.id}",
            params={"limit": "lots"},
        )
        assert by_municipality.json()["total"] == 1
        assert by_municipality.json()["limit"] == 50

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_history_rejects_malformed_filter_id(self, client) -> None:
        response = await client.get("/payments/history", params={"userId": "nobody"})
        assert response.status_code == 400


class TestQRCodeEndpoints:
    """Integration tests for QR code endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_generate_validate_and_details(self, client, municipality, resident) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]

        generated = await client.post(
            "/qr/generate", json={"paymentId": payment_id, "size": 128}
        )
        assert generated.status_code == 201
        artifact = generated.json()
        assert artifact["imageUrl"].startswith("data:image/png;base64,")
        assert artifact["data"]["paymentId"] == payment_id
        assert artifact["data"]["currency"] == "EUR"
        assert artifact["data"]["amount"] == 100.0
        assert "expiresAt" in artifact["data"]

        validated = await client.post("/qr/validate", json={"code": artifact["code"]})
        assert validated.status_code == 200
        assert validated.json()["valid"] is True
        assert validated.json()["payment"]["id"] == payment_id
        assert validated.json()["payment"]["status"] == "pending"

        details = await client.get(f"/qr/{artifact['code']}/details")
        assert details.status_code == 200
        assert details.json()["code"] == artifact["code"]
        assert "imageUrl" not in details.json()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validate_unknown_code(self, client) -> None:
        response = await client.post("/qr/validate", json={"code": "bm8tc3VjaC1jb2Rl"})

        assert response.status_code == 404
        assert response.json() == {
            "valid": False,
            "error": {"code": "invalid_code", "message": "Invalid QR code"},
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validate_blank_code(self, client) -> None:
        response = await client.post("/qr/validate", json={"code": ""})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validate_expired_code(self, client, stale_payment) -> None:
        payment = await stale_payment()

        response = await client.post("/qr/validate", json={"code": payment.qr_code})
        assert response.status_code == 410
        assert response.json()["valid"] is False
        assert response.json()["error"]["code"] == "code_expired"

        lookup = await client.get(f"/payments/{payment.id}")
        assert lookup.json()["status"] == "expired"

        again = await client.post("/qr/validate", json={"code": payment.qr_code})
        assert again.status_code == 409
        assert again.json()["error"]["status"] == "expired"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_regenerate(self, client, municipality, resident) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]
        old_code = (await client.post("/qr/generate", json={"paymentId": payment_id})).json()[
            "code"
        ]

        regenerated = await client.post(f"/qr/{payment_id}/regenerate")
        assert regenerated.status_code == 200
        new_code = regenerated.json()["code"]
        assert new_code != old_code

        assert (await client.post("/qr/validate", json={"code": old_code})).status_code == 404
        assert (await client.post("/qr/validate", json={"code": new_code})).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"size": 2000}, {"expirationMins": 1441}])
    async def test_generate_rejects_invalid_parameters(
        self, client, municipality, resident, body
    ) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]

        response = await client.post("/qr/generate", json={"paymentId": payment_id, **body})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_generate_for_completed_payment(self, client, municipality, resident) -> None:
        payment_id = (await _initiate(client, municipality, resident)).json()["id"]
        await client.put(f"/payments/{payment_id}/status", json={"status": "completed"})

        response = await client.post("/qr/generate", json={"paymentId": payment_id})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_state"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_generate_after_window_is_refused(self, client, stale_payment) -> None:
        payment = await stale_payment()
        payment_id = str(payment.id)
        previous_code = payment.qr_code

        response = await client.post(
            "/qr/generate", json={"paymentId": payment_id, "expirationMins": 90}
        )

        assert response.status_code == 410
        assert response.json()["error"]["code"] == "code_expired"
        lookup = await client.get(f"/payments/{payment_id}")
        assert lookup.json()["status"] == "pending"
        assert lookup.json()["qrCode"] == previous_code


class TestAdminAndMonitoringEndpoints:
    """Integration tests for admin and monitoring endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_expiration_sweep(self, client, stale_payment) -> None:
        payment = await stale_payment()

        first = await client.post("/admin/expire")
        assert first.status_code == 200
        assert first.json() == {"expiredPayments": 1}

        second = await client.post("/admin/expire")
        assert second.json() == {"expiredPayments": 0}

        lookup = await client.get(f"/payments/{payment.id}")
        assert lookup.json()["status"] == "expired"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client, session_factory, stale_payment) -> None:
        await stale_payment()

        with patch(
            "municipal_payments.monitoring.health.get_session_factory",
            return_value=session_factory,
        ):
            health = await client.get("/health")
            ready = await client.get("/health/ready")

        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        assert health.json()["checks"]["database"]["pending_payments"] == 1
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "payments_created_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["version"] == __version__
