"""End-to-end API flow over the HTTP surface"""

import uuid

import pytest
from httpx import AsyncClient

from conftest import GUEST_LAT, GUEST_LNG, STANDARD_RATES, request_payload

API = "/api/v1"


async def put_photographer(client: AsyncClient, **overrides) -> str:
    photographer_id = str(uuid.uuid4())
    body = {
        "latitude": GUEST_LAT + 0.002,
        "longitude": GUEST_LNG,
        "display_name": "Haruto Kimura",
        "response_radius_m": 2000,
        "instant_rates": STANDARD_RATES,
    }
    body.update(overrides)
    response = await client.put(f"{API}/photographers/{photographer_id}/location", json=body)
    assert response.status_code == 200
    return photographer_id


class TestRequestFlow:
    async def test_request_to_paid_booking(self, client: AsyncClient):
        photographer_id = await put_photographer(client)

        response = await client.post(f"{API}/requests/", json=request_payload())
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "pending"
        assert created["offers_sent"] == 1
        request_id = created["request_id"]

        response = await client.get(f"{API}/photographers/{photographer_id}/offers")
        assert [o["request_id"] for o in response.json()] == [request_id]

        response = await client.post(
            f"{API}/requests/{request_id}/responses",
            json={"photographer_id": photographer_id, "outcome": "accept"},
        )
        assert response.status_code == 200
        accepted = response.json()
        assert accepted["is_matched"] is True
        booking_id = accepted["booking_id"]

        response = await client.get(f"{API}/bookings/{booking_id}")
        booking = response.json()
        assert booking["status"] == "matched"
        assert booking["payment_status"] == "pending"
        assert booking["platform_fee"] + booking["photographer_earnings"] == booking["total_amount"]

        response = await client.post(f"{API}/bookings/{booking_id}/start", json={"photographer_id": photographer_id})
        assert response.json()["status"] == "in_progress"

        response = await client.post(
            f"{API}/bookings/{booking_id}/deliver",
            json={
                "photographer_id": photographer_id,
                "photo_count": 30,
                "delivery_url": "https://photos.example.jp/album/xyz",
            },
        )
        assert response.json()["photos_delivered"] == 30

        response = await client.post(f"{API}/bookings/{booking_id}/confirm-delivery", json={"rating": 4})
        assert response.status_code == 200
        assert response.json()["payment_status"] == "paid"

        response = await client.get(f"{API}/admin/bookings/{booking_id}")
        assert response.json()["escrow"]["status"] == "captured"

    async def test_guest_reads_and_cancels_request(self, client: AsyncClient):
        await put_photographer(client)
        response = await client.post(f"{API}/requests/", json=request_payload(urgency="within_30min"))
        request_id = response.json()["request_id"]

        response = await client.get(f"{API}/requests/{request_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

        response = await client.post(f"{API}/requests/{request_id}/cancel", json={"reason": "Found a friend"})
        assert response.status_code == 200
        assert response.json() == {
            "id": request_id,
            "kind": "request",
            "status": "cancelled",
            "payment_status": None,
        }

    async def test_candidate_preview(self, client: AsyncClient):
        near = await put_photographer(client, latitude=GUEST_LAT + 0.001)
        far = await put_photographer(client, latitude=GUEST_LAT + 0.008)
        response = await client.post(f"{API}/requests/", json=request_payload())
        request_id = response.json()["request_id"]

        response = await client.get(f"{API}/requests/{request_id}/candidates")

        assert [c["photographer_id"] for c in response.json()] == [near, far]

    async def test_request_history(self, client: AsyncClient):
        first = await client.post(f"{API}/requests/", json=request_payload())
        second = await client.post(f"{API}/requests/", json=request_payload(guest_phone="+819012345678"))
        await client.post(f"{API}/requests/", json=request_payload(guest_phone="+81 80-9999-0000"))

        response = await client.get(f"{API}/requests/history", params={"phone": "+81-90-1234-5678"})

        assert response.status_code == 200
        assert {r["id"] for r in response.json()} == {first.json()["request_id"], second.json()["request_id"]}

    async def test_dispute_status_update(self, client: AsyncClient):
        photographer_id = await put_photographer(client)
        response = await client.post(f"{API}/requests/", json=request_payload())
        request_id = response.json()["request_id"]
        response = await client.post(
            f"{API}/requests/{request_id}/responses",
            json={"photographer_id": photographer_id, "outcome": "accept"},
        )
        booking_id = response.json()["booking_id"]
        await client.post(f"{API}/bookings/{booking_id}/start", json={"photographer_id": photographer_id})
        response = await client.post(
            f"{API}/bookings/{booking_id}/disputes",
            json={"reason": "late_arrival", "description": "Arrived forty minutes late"},
        )
        dispute_id = response.json()["id"]

        response = await client.patch(f"{API}/admin/disputes/{dispute_id}/status", json={"status": "escalated"})
        assert response.status_code == 200
        assert response.json()["status"] == "escalated"

        response = await client.get(f"{API}/admin/disputes/stats")
        assert response.json()["escalated"] == 1

        response = await client.patch(f"{API}/admin/disputes/{dispute_id}/status", json={"status": "resolved"})
        assert response.status_code == 422


class TestErrorMapping:
    async def test_invalid_request_is_422(self, client: AsyncClient):
        response = await client.post(f"{API}/requests/", json=request_payload(duration=45))
        assert response.status_code == 422

    async def test_usage_limit_is_429(self, client: AsyncClient):
        for _ in range(3):
            response = await client.post(f"{API}/requests/", json=request_payload())
            assert response.status_code == 201

        response = await client.post(f"{API}/requests/", json=request_payload())

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "usage_limit_exceeded"
        assert body["monthly_limit"] == 3

        response = await client.get(
            f"{API}/requests/usage", params={"phone": "+81 90-1234-5678", "email": "yuki@photomail.jp"}
        )
        assert response.json()["limit_reached"] is True

    async def test_second_accept_is_409(self, client: AsyncClient):
        photographer_id = await put_photographer(client)
        response = await client.post(f"{API}/requests/", json=request_payload())
        request_id = response.json()["request_id"]
        reply = {"photographer_id": photographer_id, "outcome": "accept"}

        first = await client.post(f"{API}/requests/{request_id}/responses", json=reply)
        second = await client.post(f"{API}/requests/{request_id}/responses", json=reply)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "already_matched"

    async def test_unknown_booking_is_404(self, client: AsyncClient):
        response = await client.get(f"{API}/bookings/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.parametrize("status_filter", ["open", "closed"])
    async def test_bad_dispute_filter(self, client: AsyncClient, status_filter):
        response = await client.get(f"{API}/admin/disputes", params={"status": status_filter})
        assert response.status_code == 422


class TestNotificationEndpoints:
    async def test_unread_and_mark_read(self, client: AsyncClient):
        photographer_id = await put_photographer(client)
        await client.post(f"{API}/requests/", json=request_payload())
        user_key = f"photographer:{photographer_id}"

        response = await client.get(f"{API}/notifications/{user_key}/unread")
        assert response.json()["unread"] == 1

        response = await client.get(f"{API}/notifications/{user_key}")
        assert [n["type"] for n in response.json()] == ["new_request"]

        response = await client.post(f"{API}/notifications/{user_key}/read", json={})
        assert response.json()["unread"] == 0
