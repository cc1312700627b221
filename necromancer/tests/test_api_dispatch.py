"""
API Tests for the dispatch flow.

Requester creates a request, drivers answer offers, work is reported.
"""

import pytest

from necromancer.tests.helpers import (
    DRIVER_A_COORDS,
    DRIVER_B_COORDS,
    REQUEST_COORDS,
    ROADSIDE,
    auth_headers,
)

REQUESTER = auth_headers(1, "USER")
OTHER_REQUESTER = auth_headers(2, "CUSTOMER")
ADMIN = auth_headers(99, "ADMIN")
DRIVER_A = auth_headers(501, "DRIVER")
DRIVER_B = auth_headers(502, "DRIVER")


async def _onboard(client, headers, coords):
    response = await client.post("/v1/drivers", json={"skills": [ROADSIDE]}, headers=headers)
    assert response.status_code == 201
    assert response.json()["available"] is False
    driver_id = response.json()["id"]

    response = await client.post(
        "/v1/drivers/me/location",
        json={"longitude": coords[0], "latitude": coords[1]},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["applied"] is True

    response = await client.patch("/v1/drivers/me/availability", json={"available": True}, headers=headers)
    assert response.status_code == 200
    assert response.json()["available"] is True
    return driver_id


async def _create_request(client, headers=REQUESTER):
    response = await client.post(
        "/v1/requests",
        json={
            "longitude": REQUEST_COORDS[0],
            "latitude": REQUEST_COORDS[1],
            "service_type": ROADSIDE,
            "description": "Dead battery in the parking lot",
        },
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
async def two_drivers(client):
    a_id = await _onboard(client, DRIVER_A, DRIVER_A_COORDS)
    b_id = await _onboard(client, DRIVER_B, DRIVER_B_COORDS)
    return a_id, b_id


# ===================== Health and auth =====================

@pytest.mark.asyncio
async def test_health(client, mocker):
    mocker.patch("necromancer.app.main.ping_redis", new=mocker.AsyncMock(return_value=True))

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] is True
    assert "X-Correlation-ID" in response.headers


@pytest.mark.asyncio
async def test_auth_required(client):
    # TEST 1: Missing token
    response = await client.get("/v1/requests")
    assert response.status_code in (401, 403)

    # TEST 2: Garbage token
    response = await client.get("/v1/requests", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_UNAUTHORIZED"

    # TEST 3: Unknown role
    response = await client.get("/v1/requests", headers=auth_headers(1, "PILOT"))
    assert response.status_code == 403

    # TEST 4: Wrong role for the endpoint
    response = await client.post("/v1/drivers", json={"skills": [ROADSIDE]}, headers=REQUESTER)
    assert response.status_code == 403


# ===================== Full flow =====================

@pytest.mark.asyncio
async def test_dispatch_accept_start_complete(client, two_drivers, mock_redis):
    a_id, b_id = two_drivers

    created = await _create_request(client)
    request_id = created["id"]
    assert created["status"] == "offered"
    assert created["assigned_driver_id"] is None

    # Both drivers see the offer
    response = await client.get("/v1/driver/offers", headers=DRIVER_A)
    assert [o["request_id"] for o in response.json()] == [request_id]
    assert response.json()[0]["rank"] == 0
    response = await client.get("/v1/driver/offers", headers=DRIVER_B)
    assert response.json()[0]["rank"] == 1

    # B accepts first, A is too late
    response = await client.post(f"/v1/driver/requests/{request_id}/accept", headers=DRIVER_B)
    assert response.status_code == 200
    assert response.json()["status"] == "assigned"
    assert response.json()["assigned_driver_id"] == b_id

    response = await client.post(f"/v1/driver/requests/{request_id}/accept", headers=DRIVER_A)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CONFLICT_ALREADY_ASSIGNED"
    assert response.json()["details"]["assigned_driver_id"] == b_id

    # A cannot start B's job
    response = await client.post(f"/v1/driver/requests/{request_id}/start", headers=DRIVER_A)
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_PERM_NOT_ASSIGNED_DRIVER"

    response = await client.post(f"/v1/driver/requests/{request_id}/start", headers=DRIVER_B)
    assert response.status_code == 200
    assert response.json()["status"] == "in_progress"

    response = await client.post(f"/v1/driver/requests/{request_id}/complete", headers=DRIVER_B)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    # Requester was told who is coming
    assert mock_redis.message_types("necromancer:user:1") == ["request_assigned"]


@pytest.mark.asyncio
async def test_decline_is_idempotent_over_http(client, two_drivers):
    created = await _create_request(client)
    request_id = created["id"]

    first = await client.post(f"/v1/driver/requests/{request_id}/decline", headers=DRIVER_A)
    second = await client.post(f"/v1/driver/requests/{request_id}/decline", headers=DRIVER_A)

    assert first.status_code == second.status_code == 200
    assert first.json()["status"] == second.json()["status"] == "offered"
    assert first.json()["dispatch_round"] == second.json()["dispatch_round"]


@pytest.mark.asyncio
async def test_request_without_drivers_is_unmatched(client):
    created = await _create_request(client)

    assert created["status"] == "unmatched"
    assert created["dispatch_round"] == 3

    response = await client.post(f"/v1/requests/{created['id']}/redispatch", headers=REQUESTER)
    assert response.status_code == 200
    assert response.json()["status"] == "unmatched"


# ===================== Cancellation =====================

@pytest.mark.asyncio
async def test_cancel_in_progress_requires_admin(client, two_drivers):
    created = await _create_request(client)
    request_id = created["id"]
    await client.post(f"/v1/driver/requests/{request_id}/accept", headers=DRIVER_A)
    await client.post(f"/v1/driver/requests/{request_id}/start", headers=DRIVER_A)

    response = await client.post(f"/v1/requests/{request_id}/cancel", headers=REQUESTER)
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_PERM_CANCEL_IN_PROGRESS"

    response = await client.post(
        f"/v1/requests/{request_id}/cancel", json={"reason": "Duplicate job"}, headers=ADMIN
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancellation_reason"] == "Duplicate job"

    # Terminal
    response = await client.post(f"/v1/requests/{request_id}/cancel", headers=ADMIN)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CONFLICT_INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_cancel_then_accept_is_rejected(client, two_drivers):
    created = await _create_request(client)
    request_id = created["id"]

    response = await client.post(f"/v1/requests/{request_id}/cancel", headers=REQUESTER)
    assert response.status_code == 200

    response = await client.post(f"/v1/driver/requests/{request_id}/accept", headers=DRIVER_A)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CONFLICT_REQUEST_CANCELLED"


# ===================== Requests: validation and visibility =====================

@pytest.mark.asyncio
async def test_create_request_validation(client):
    response = await client.post(
        "/v1/requests",
        json={"longitude": -75.0, "latitude": 140.0, "service_type": ROADSIDE},
        headers=REQUESTER,
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"

    response = await client.post(
        "/v1/requests",
        json={"longitude": -75.0, "latitude": 40.0, "service_type": "Valet Parking"},
        headers=REQUESTER,
    )
    assert response.status_code == 422

    response = await client.post("/v1/requests", json={"longitude": -75.0, "latitude": 40.0}, headers=REQUESTER)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_request_visibility(client, two_drivers):
    created = await _create_request(client)
    request_id = created["id"]
    await _create_request(client, headers=OTHER_REQUESTER)

    response = await client.get(f"/v1/requests/{request_id}", headers=REQUESTER)
    assert response.status_code == 200

    response = await client.get(f"/v1/requests/{request_id}", headers=OTHER_REQUESTER)
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_PERM_NOT_OWNER"

    response = await client.get(f"/v1/requests/{request_id}", headers=DRIVER_A)
    assert response.status_code == 200

    response = await client.get("/v1/requests/9999", headers=ADMIN)
    assert response.status_code == 404

    response = await client.get("/v1/requests", headers=REQUESTER)
    assert [r["id"] for r in response.json()] == [request_id]

    response = await client.get("/v1/requests", headers=ADMIN)
    assert len(response.json()) == 2


# ===================== Drivers =====================

@pytest.mark.asyncio
async def test_driver_profile_and_stale_location(client):
    driver_id = await _onboard(client, DRIVER_A, DRIVER_A_COORDS)

    response = await client.post(
        "/v1/drivers/me/location",
        json={"longitude": -75.1, "latitude": 40.1, "recorded_at": "2025-12-31T23:00:00Z"},
        headers=DRIVER_A,
    )
    assert response.status_code == 200
    assert response.json() == {"driver_id": driver_id, "applied": False}

    response = await client.get("/v1/drivers/me", headers=DRIVER_A)
    assert response.json()["longitude"] == DRIVER_A_COORDS[0]
    assert response.json()["latitude"] == DRIVER_A_COORDS[1]

    # Second onboarding of the same account conflicts
    response = await client.post("/v1/drivers", json={"skills": [ROADSIDE]}, headers=DRIVER_A)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_nearby_drivers(client, two_drivers):
    a_id, b_id = two_drivers

    response = await client.get(
        "/v1/drivers/nearby",
        params={"longitude": REQUEST_COORDS[0], "latitude": REQUEST_COORDS[1], "service_type": ROADSIDE},
        headers=REQUESTER,
    )

    assert response.status_code == 200
    assert [d["driver_id"] for d in response.json()] == [a_id, b_id]
    assert response.json()[0]["distance_meters"] == pytest.approx(500, abs=2)


@pytest.mark.asyncio
async def test_admin_deactivates_driver(client, two_drivers):
    a_id, b_id = two_drivers

    response = await client.delete(f"/v1/drivers/{a_id}", headers=DRIVER_A)
    assert response.status_code == 403

    response = await client.delete(f"/v1/drivers/{a_id}", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.patch("/v1/drivers/me/availability", json={"available": True}, headers=DRIVER_A)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CONFLICT_DRIVER_UNAVAILABLE"

    response = await client.get(f"/v1/drivers/{a_id}", headers=REQUESTER)
    assert response.status_code == 200

    response = await client.get("/v1/drivers/12345", headers=REQUESTER)
    assert response.status_code == 404
