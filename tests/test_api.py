"""
Integration tests for the REST API endpoints.

The domain services are overridden with the in-memory doubles from
``conftest.py`` so requests run the real routes, schemas, identity checks
and error rendering without PostgreSQL.  The webhook route verifies real
Stripe signatures computed with a test secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from rideflex.domain.enums import DriverStatus, TripStatus
from rideflex.infrastructure.processor import StripeProcessor

WEBHOOK_SECRET = "whsec_test_secret"

RIDER = {"X-User-Id": "1", "X-User-Role": "rider"}
DRIVER = {"X-User-Id": "1", "X-User-Role": "driver"}
ADMIN = {"X-User-Id": "99", "X-User-Role": "admin"}

TRIP_BODY = {
    "pickup_location": {"coordinates": [77.5946, 12.9716], "address": "MG Road"},
    "dropoff_location": {"coordinates": [77.6412, 13.0012], "address": "Hebbal"},
    "vehicle_class": "Sedan",
}


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


# ── Fixture ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(
    lifecycle, matcher, ledger, payment_methods, review_service, fare_engine, rider, driver
):
    with (
        patch(
            "rideflex.workers.expiry.start_expiry_loop",
            new_callable=AsyncMock,
        ),
        patch(
            "rideflex.workers.expiry.stop_expiry_loop",
            new_callable=AsyncMock,
        ),
    ):
        from rideflex.api import dependencies as deps
        from rideflex.api.app import create_app

        async def _test_db():
            yield AsyncMock()

        app = create_app()
        app.dependency_overrides[deps.get_db] = _test_db
        app.dependency_overrides[deps.get_trip_lifecycle] = lambda: lifecycle
        app.dependency_overrides[deps.get_geo_matcher] = lambda: matcher
        app.dependency_overrides[deps.get_payment_ledger] = lambda: ledger
        app.dependency_overrides[deps.get_payment_methods] = lambda: payment_methods
        app.dependency_overrides[deps.get_review_service] = lambda: review_service
        app.dependency_overrides[deps.get_fare_engine] = lambda: fare_engine
        app.dependency_overrides[deps.get_processor] = lambda: StripeProcessor(
            "sk_test_unused", WEBHOOK_SECRET
        )

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


# ── Health ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    redis = AsyncMock()
    with patch("rideflex.api.routes.admin.get_redis", AsyncMock(return_value=redis)):
        resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    redis.ping.assert_awaited_once()


@pytest.mark.asyncio
async def test_health_reports_unreachable_cache(client: AsyncClient):
    redis = AsyncMock()
    redis.ping.side_effect = ConnectionError("refused")
    with patch("rideflex.api.routes.admin.get_redis", AsyncMock(return_value=redis)):
        resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 502
    assert resp.json()["kind"] == "upstream_error"


# ── Trips ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_trip_returns_201(client: AsyncClient):
    resp = await client.post("/api/v1/trips", json=TRIP_BODY, headers=RIDER)
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "requested"
    assert data["rider_id"] == 1
    assert data["payment_status"] == "unpaid"
    assert data["pickup_location"]["coordinates"] == [77.5946, 12.9716]
    assert data["fare"]["base_fare"] == 50
    assert data["fare"]["currency"] == "INR"


@pytest.mark.asyncio
async def test_create_trip_requires_identity(client: AsyncClient):
    resp = await client.post("/api/v1/trips", json=TRIP_BODY)
    assert resp.status_code == 403
    assert resp.json()["kind"] == "forbidden"


@pytest.mark.asyncio
async def test_drivers_cannot_request_trips(client: AsyncClient):
    resp = await client.post("/api/v1/trips", json=TRIP_BODY, headers=DRIVER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_create_trip_bad_coordinates(client: AsyncClient):
    body = dict(TRIP_BODY, pickup_location={"coordinates": [77.59, 123.0]})
    resp = await client.post("/api/v1/trips", json=body, headers=RIDER)
    assert resp.status_code == 400
    assert resp.json()["kind"] == "invalid_argument"
    assert "pickup location" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_create_trip_unknown_vehicle_class(client: AsyncClient):
    body = dict(TRIP_BODY, vehicle_class="Helicopter")
    resp = await client.post("/api/v1/trips", json=body, headers=RIDER)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_fare_estimate(client: AsyncClient):
    body = {k: TRIP_BODY[k] for k in ("pickup_location", "dropoff_location", "vehicle_class")}
    resp = await client.post("/api/v1/trips/fare-estimate", json=body)
    assert resp.status_code == 200
    data = resp.json()
    assert data["distance_km"] == pytest.approx(6.03, abs=0.01)
    assert data["fare"]["surge_multiplier"] == 1.0


@pytest.mark.asyncio
async def test_get_trip(client: AsyncClient, store, rider, driver):
    trip = store.add_trip(rider.id, driver_id=driver.id, status=TripStatus.DRIVER_ASSIGNED)

    resp = await client.get(f"/api/v1/trips/{trip.id}", headers=RIDER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == trip.id
    assert data["rider"]["name"] == "Aarav Sharma"
    assert data["driver"]["name"] == "Ravi Kumar"


@pytest.mark.asyncio
async def test_get_trip_of_another_rider(client: AsyncClient, store):
    other = store.add_rider()
    trip = store.add_trip(other.id)
    resp = await client.get(f"/api/v1/trips/{trip.id}", headers=RIDER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_get_trip_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/trips/9999", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.json() == {"kind": "not_found", "detail": "No trip found with that ID"}


@pytest.mark.asyncio
async def test_trip_lifecycle_over_http(client: AsyncClient, driver):
    trip_id = (await client.post("/api/v1/trips", json=TRIP_BODY, headers=RIDER)).json()["id"]

    resp = await client.patch(f"/api/v1/trips/{trip_id}/assign", json={}, headers=DRIVER)
    assert resp.status_code == 200
    assert resp.json()["driver_id"] == driver.id
    assert driver.status == DriverStatus.BUSY

    for status in ("driver_arriving", "driver_arrived", "trip_started"):
        resp = await client.patch(
            f"/api/v1/trips/{trip_id}/status", json={"status": status}, headers=DRIVER
        )
        assert resp.status_code == 200, resp.json()

    resp = await client.post(
        f"/api/v1/trips/{trip_id}/route", json={"lng": 77.61, "lat": 12.99}, headers=DRIVER
    )
    assert resp.status_code == 201

    resp = await client.post(
        f"/api/v1/trips/{trip_id}/complete",
        json={"actual_distance_km": 10, "actual_duration_min": 20},
        headers=DRIVER,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert resp.json()["fare"]["total_fare"] == 210
    assert driver.status == DriverStatus.ONLINE


@pytest.mark.asyncio
async def test_reassign_conflicts(client: AsyncClient, store, rider, driver):
    store.add_driver(location=(77.6, 12.97))
    trip = store.add_trip(rider.id)
    await client.patch(f"/api/v1/trips/{trip.id}/assign", json={}, headers=DRIVER)

    resp = await client.patch(
        f"/api/v1/trips/{trip.id}/assign", json={"driver_id": 2}, headers=ADMIN
    )
    assert resp.status_code == 409
    assert resp.json()["kind"] == "conflict"


@pytest.mark.asyncio
async def test_illegal_transition(client: AsyncClient, store, rider, driver):
    trip = store.add_trip(
        rider.id, driver_id=driver.id, status=TripStatus.DRIVER_ASSIGNED
    )
    resp = await client.patch(
        f"/api/v1/trips/{trip.id}/status", json={"status": "trip_started"}, headers=DRIVER
    )
    assert resp.status_code == 409
    assert resp.json()["kind"] == "invalid_transition"


@pytest.mark.asyncio
async def test_cancel_is_idempotent(client: AsyncClient, store, rider):
    trip = store.add_trip(rider.id)
    first = await client.patch(f"/api/v1/trips/{trip.id}/cancel", headers=RIDER)
    second = await client.patch(f"/api/v1/trips/{trip.id}/cancel", headers=RIDER)
    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == "cancelled_by_rider"


@pytest.mark.asyncio
async def test_admin_cancel_needs_party(client: AsyncClient, store, rider):
    trip = store.add_trip(rider.id)
    resp = await client.patch(f"/api/v1/trips/{trip.id}/cancel", headers=ADMIN)
    assert resp.status_code == 400
    resp = await client.patch(
        f"/api/v1/trips/{trip.id}/cancel", json={"cancelled_by": "driver"}, headers=ADMIN
    )
    assert resp.json()["status"] == "cancelled_by_driver"


@pytest.mark.asyncio
async def test_rider_cannot_cancel_another_riders_trip(client: AsyncClient, store):
    other = store.add_rider()
    trip = store.add_trip(other.id)

    resp = await client.patch(f"/api/v1/trips/{trip.id}/cancel", headers=RIDER)

    assert resp.status_code == 403
    assert resp.json()["kind"] == "forbidden"
    assert trip.status == TripStatus.REQUESTED


@pytest.mark.asyncio
async def test_driver_cannot_cancel_unassigned_trip(client: AsyncClient, store, rider):
    trip = store.add_trip(rider.id)
    resp = await client.patch(f"/api/v1/trips/{trip.id}/cancel", headers=DRIVER)
    assert resp.status_code == 403
    assert trip.status == TripStatus.REQUESTED


@pytest.mark.asyncio
async def test_driver_cannot_drive_another_drivers_trip(client: AsyncClient, store, rider):
    other = store.add_driver(location=(77.6, 12.97))
    trip = store.add_trip(
        rider.id, driver_id=other.id, status=TripStatus.TRIP_STARTED
    )

    status = await client.patch(
        f"/api/v1/trips/{trip.id}/status", json={"status": "no_show"}, headers=DRIVER
    )
    route = await client.post(
        f"/api/v1/trips/{trip.id}/route", json={"lng": 77.61, "lat": 12.99}, headers=DRIVER
    )
    complete = await client.post(
        f"/api/v1/trips/{trip.id}/complete",
        json={"actual_distance_km": 10, "actual_duration_min": 20},
        headers=DRIVER,
    )

    assert status.status_code == route.status_code == complete.status_code == 403
    assert trip.status == TripStatus.TRIP_STARTED
    assert store.route_points == []


@pytest.mark.asyncio
async def test_admin_advances_any_trip(client: AsyncClient, store, rider, driver):
    trip = store.add_trip(
        rider.id, driver_id=driver.id, status=TripStatus.DRIVER_ASSIGNED
    )
    resp = await client.patch(
        f"/api/v1/trips/{trip.id}/status", json={"status": "driver_arrived"}, headers=ADMIN
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "driver_arrived"


# ── Riders / drivers ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_nearby_drivers(client: AsyncClient, driver):
    resp = await client.get(
        "/api/v1/riders/nearby-drivers", params={"lat": 12.9716, "lng": 77.5946}
    )
    assert resp.status_code == 200
    (match,) = resp.json()
    assert match["driver_id"] == driver.id
    assert match["vehicle"] == "Maruti Dzire"
    assert 0 < match["distance_km"] < 5


@pytest.mark.asyncio
async def test_nearby_drivers_invalid_point(client: AsyncClient):
    resp = await client.get("/api/v1/riders/nearby-drivers", params={"lat": 95, "lng": 77.5})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_driver_updates_own_location(client: AsyncClient, driver):
    resp = await client.patch(
        f"/api/v1/drivers/{driver.id}/location",
        json={"coordinates": [77.61, 12.98]},
        headers=DRIVER,
    )
    assert resp.status_code == 200
    assert resp.json()["has_location"] is True
    assert driver.current_location == (77.61, 12.98)


@pytest.mark.asyncio
async def test_malformed_location_clears_it(client: AsyncClient, driver):
    resp = await client.patch(
        f"/api/v1/drivers/{driver.id}/location",
        json={"coordinates": ["north", None]},
        headers=DRIVER,
    )
    assert resp.status_code == 200
    assert resp.json()["has_location"] is False


@pytest.mark.asyncio
async def test_driver_cannot_move_another(client: AsyncClient, store):
    other = store.add_driver(location=(77.6, 12.97))
    resp = await client.patch(
        f"/api/v1/drivers/{other.id}/location",
        json={"coordinates": [77.61, 12.98]},
        headers=DRIVER,
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_driver_status(client: AsyncClient, driver):
    resp = await client.patch(
        f"/api/v1/drivers/{driver.id}/status", json={"status": "break"}, headers=DRIVER
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "break"


# ── Payments ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_checkout_redirect_and_webhook_settle_once(
    client: AsyncClient, completed_trip, rider
):
    resp = await client.post(
        "/api/v1/payments/create-session",
        json={"trip_id": completed_trip.id},
        headers=RIDER,
    )
    assert resp.status_code == 200
    checkout = resp.json()
    assert checkout["amount"] == 200
    assert checkout["url"].startswith("https://")

    resp = await client.get(
        "/api/v1/payments/success", params={"payment_id": checkout["payment_id"]}
    )
    assert resp.status_code == 200
    settled = resp.json()
    assert settled["payment"]["status"] == "paid"
    assert settled["trip_payment_status"] == "paid"
    assert settled["rider_total_trips"] == 1
    assert settled["payment_updated"] is True

    payload = json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": checkout["session_id"],
            "metadata": {"paymentId": str(checkout["payment_id"])},
            "payment_intent": "pi_123",
        }},
    })
    resp = await client.post(
        "/api/v1/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload), "Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "handled": True}
    assert rider.total_trips == 1
    assert rider.total_amount_spent == 200


@pytest.mark.asyncio
async def test_duplicate_checkout_conflicts(client: AsyncClient, completed_trip):
    body = {"trip_id": completed_trip.id}
    await client.post("/api/v1/payments/create-session", json=body, headers=RIDER)
    resp = await client.post("/api/v1/payments/create-session", json=body, headers=RIDER)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_checkout_cancel_redirect(client: AsyncClient, completed_trip):
    created = await client.post(
        "/api/v1/payments/create-session", json={"trip_id": completed_trip.id}, headers=RIDER
    )
    resp = await client.get(
        "/api/v1/payments/cancel", params={"payment_id": created.json()["payment_id"]}
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_webhook_acknowledges_unknown_payment(client: AsyncClient):
    payload = json.dumps({
        "id": "evt_2",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_gone", "metadata": {"paymentId": "4242"}}},
    })
    resp = await client.post(
        "/api/v1/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload), "Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "handled": False}


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client: AsyncClient):
    payload = json.dumps({"id": "evt_x", "type": "checkout.session.completed", "data": {"object": {}}})
    resp = await client.post(
        "/api/v1/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret="whsec_wrong")},
    )
    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_webhook_requires_signature(client: AsyncClient):
    resp = await client.post("/api/v1/payments/webhook", content=b"{}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_intent_and_refund(client: AsyncClient, completed_trip):
    resp = await client.post(
        "/api/v1/payments/create-intent",
        json={"trip_id": completed_trip.id, "payment_method_id": "pm_card_visa"},
        headers=RIDER,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["intent_status"] == "succeeded"
    assert data["payment"]["status"] == "paid"
    payment_id = data["payment"]["id"]

    forbidden = await client.post(
        f"/api/v1/payments/{payment_id}/refund", json={"amount": 50}, headers=RIDER
    )
    assert forbidden.status_code == 403

    resp = await client.post(
        f"/api/v1/payments/{payment_id}/refund", json={"amount": 50}, headers=ADMIN
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "partially_refunded"
    assert resp.json()["refunded_amount"] == 50


@pytest.mark.asyncio
async def test_tip(client: AsyncClient, completed_trip):
    resp = await client.post(
        "/api/v1/payments/tip",
        json={"trip_id": completed_trip.id, "tip_amount": 40},
        headers=RIDER,
    )
    assert resp.status_code == 201
    assert resp.json()["payment"]["type"] == "tip"
    assert resp.json()["payment"]["driver_earnings"] == 40


@pytest.mark.asyncio
async def test_saved_methods(client: AsyncClient):
    assert (await client.get("/api/v1/payments/methods", headers=RIDER)).json() == []

    resp = await client.post(
        "/api/v1/payments/methods", json={"payment_method_id": "pm_1"}, headers=RIDER
    )
    assert resp.status_code == 201
    assert resp.json()["last4"] == "4242"

    resp = await client.patch("/api/v1/payments/methods/pm_1/default", headers=RIDER)
    assert resp.status_code == 204
    resp = await client.delete("/api/v1/payments/methods/pm_1", headers=RIDER)
    assert resp.status_code == 204


@pytest.mark.asyncio
async def test_cannot_remove_another_riders_card(client: AsyncClient, store):
    other = store.add_rider()
    other_headers = {"X-User-Id": str(other.id), "X-User-Role": "rider"}
    await client.post(
        "/api/v1/payments/methods", json={"payment_method_id": "pm_1"}, headers=RIDER
    )

    resp = await client.delete("/api/v1/payments/methods/pm_1", headers=other_headers)
    assert resp.status_code == 404

    await client.post(
        "/api/v1/payments/methods", json={"payment_method_id": "pm_7"}, headers=other_headers
    )
    resp = await client.delete("/api/v1/payments/methods/pm_1", headers=other_headers)
    assert resp.status_code == 403
    resp = await client.patch("/api/v1/payments/methods/pm_1/default", headers=other_headers)
    assert resp.status_code == 403

    saved = (await client.get("/api/v1/payments/methods", headers=RIDER)).json()
    assert [m["id"] for m in saved] == ["pm_1"]


@pytest.mark.asyncio
async def test_payment_history_and_details(client: AsyncClient, completed_trip, store):
    created = await client.post(
        "/api/v1/payments/create-session", json={"trip_id": completed_trip.id}, headers=RIDER
    )
    payment_id = created.json()["payment_id"]

    resp = await client.get("/api/v1/payments/history", headers=RIDER)
    assert resp.status_code == 200
    history = resp.json()
    assert history["total"] == 1
    assert history["current_page"] == 1
    assert [p["id"] for p in history["payments"]] == [payment_id]

    resp = await client.get("/api/v1/payments/history", headers=DRIVER)
    assert resp.json()["total"] == 1

    resp = await client.get(f"/api/v1/payments/{payment_id}", headers=RIDER)
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["trip"]["id"] == completed_trip.id
    assert detail["rider"]["name"] == "Aarav Sharma"
    assert detail["driver"]["name"] == "Ravi Kumar"

    stranger = {"X-User-Id": str(store.add_rider().id), "X-User-Role": "rider"}
    resp = await client.get(f"/api/v1/payments/{payment_id}", headers=stranger)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_payment_history_paging_and_roles(client: AsyncClient):
    resp = await client.get("/api/v1/payments/history", params={"limit": 0}, headers=RIDER)
    assert resp.status_code == 400
    resp = await client.get("/api/v1/payments/history", headers=ADMIN)
    assert resp.status_code == 403


# ── Reviews ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_review_flow(client: AsyncClient, completed_trip, driver):
    resp = await client.post(
        f"/api/v1/reviews/trip/{completed_trip.id}",
        json={"rating": 4.5, "comment": "On time", "tags": ["punctual"]},
        headers=RIDER,
    )
    assert resp.status_code == 201
    review = resp.json()
    assert review["driver_id"] == driver.id
    assert review["status"] == "active"

    resp = await client.get(f"/api/v1/reviews/driver/{driver.id}")
    assert resp.status_code == 200
    listing = resp.json()
    assert listing["total_reviews"] == 1
    assert listing["driver_stats"] == {"average_rating": 4.5, "total_reviews": 1}

    resp = await client.patch(
        f"/api/v1/reviews/{review['id']}/status", json={"status": "hidden"}, headers=ADMIN
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "hidden"
    assert driver.total_reviews == 0


@pytest.mark.asyncio
async def test_review_rules(client: AsyncClient, completed_trip):
    url = f"/api/v1/reviews/trip/{completed_trip.id}"
    resp = await client.post(url, json={"rating": 4.2}, headers=RIDER)
    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation_error"

    resp = await client.post(url, json={"rating": 5}, headers=DRIVER)
    assert resp.status_code == 403

    await client.post(url, json={"rating": 5}, headers=RIDER)
    resp = await client.post(url, json={"rating": 5}, headers=RIDER)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_admins_moderate_reviews(client: AsyncClient, completed_trip):
    created = await client.post(
        f"/api/v1/reviews/trip/{completed_trip.id}", json={"rating": 2}, headers=RIDER
    )
    resp = await client.patch(
        f"/api/v1/reviews/{created.json()['id']}/status",
        json={"status": "hidden"},
        headers=RIDER,
    )
    assert resp.status_code == 403
