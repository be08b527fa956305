"""Tests for health endpoint and the error envelope."""

import pytest
from httpx import AsyncClient

from repair_engine.models import Bidding
from repair_engine.services.bidding_distribution import DistributionResult
from repair_engine.services.errors import PolicyRejected


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test health endpoint returns ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


@pytest.mark.asyncio
async def test_missing_identity_header_is_validation_error(client: AsyncClient):
    response = await client.get("/v1/biddings/1")
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_unknown_bidding_returns_error_envelope(db, client: AsyncClient):
    response = await client.get("/v1/biddings/999", headers={"X-User-Id": "1"})
    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "BIDDING_NOT_FOUND"
    assert body["error"]["detail"] == {"bidding_id": 999}


@pytest.mark.asyncio
async def test_create_bidding_policy_rejection(db, client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    """Domain rejections surface as 403 with the engine's code."""
    from repair_engine.routes import biddings as bidding_routes

    async def fake_create_bidding(session, **kwargs) -> tuple[Bidding, DistributionResult]:
        raise PolicyRejected("BLACKLISTED", "Account is restricted", {"reason": "chargeback fraud"})

    monkeypatch.setattr(bidding_routes, "create_bidding", fake_create_bidding)

    response = await client.post(
        "/v1/biddings",
        headers={"X-User-Id": "7"},
        json={"repairItems": ["前保险杠刮擦"], "latitude": 31.23, "longitude": 121.47},
    )
    assert response.status_code == 403
    assert response.json() == {
        "error": {
            "code": "BLACKLISTED",
            "message": "Account is restricted",
            "detail": {"reason": "chargeback fraud"},
        }
    }


@pytest.mark.asyncio
async def test_create_bidding_response_shape(db, client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    from repair_engine.routes import biddings as bidding_routes

    async def fake_create_bidding(session, **kwargs) -> tuple[Bidding, DistributionResult]:
        assert kwargs["user_id"] == 7
        assert kwargs["range_km"] == 8.0
        bidding = Bidding(
            id=41,
            user_id=7,
            vehicle_info=kwargs["vehicle"].model_dump(mode="json"),
            repair_items=kwargs["repair_items"],
            complexity_level="L2",
            latitude=kwargs["latitude"],
            longitude=kwargs["longitude"],
            range_km=9.6,
            status="open",
            config_version=0,
        )
        return bidding, DistributionResult(bidding_id=41, radius_km=9.6, tier1=[3], tier2=[5, 6])

    monkeypatch.setattr(bidding_routes, "create_bidding", fake_create_bidding)

    response = await client.post(
        "/v1/biddings",
        headers={"X-User-Id": "7"},
        json={
            "vehicle": {"plateNumber": "沪a 12345", "brand": "Toyota"},
            "repairItems": ["前保险杠刮擦"],
            "latitude": 31.23,
            "longitude": 121.47,
            "rangeKm": 8,
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["bidding"]["id"] == 41
    assert data["bidding"]["complexityLevel"] == "L2"
    assert data["bidding"]["vehicle"]["plate_number"] == "沪A12345"
    assert data["distribution"]["radiusKm"] == 9.6
    assert data["distribution"]["tier2"] == [5, 6]
