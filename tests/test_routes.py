import json
import os
import time

import httpx
import pytest
from jose import jwt

from booking_service.main import app
from booking_service.webhook_security import compute_hmac_sha256

from .conftest import MONDAY, WEBHOOK_SECRET


def token(sub, *roles):
    return jwt.encode({"sub": sub, "roles": list(roles)}, os.environ["JWT_SECRET"], algorithm="HS256")


def auth(sub, *roles):
    return {"Authorization": f"Bearer {token(sub, *roles)}"}


CUSTOMER = auth("cust-1", "customer")
OTHER_CUSTOMER = auth("cust-2", "customer")
PROVIDER = auth("prov-1", "provider")


@pytest.fixture
async def client(core):
    app.state.core = core
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    del app.state.core


async def reserve(client, slot="10:00", headers=CUSTOMER, **extra):
    body = {"service_id": "svc-cut", "date": "2024-06-03", "slot": slot, **extra}
    return await client.post("/reservations", json=body, headers=headers)


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["service"] == "booking-service"


async def test_request_id_is_echoed(client):
    r = await client.get("/health", headers={"X-Request-Id": "req-42"})
    assert r.headers["X-Request-Id"] == "req-42"


async def test_slots(client):
    r = await client.get("/services/svc-cut/slots", params={"date": "2024-06-03"})
    assert r.status_code == 200
    assert r.json()["slots"][0] == "09:00"
    assert len(r.json()["slots"]) == 9

    r = await client.get("/services/svc-missing/slots", params={"date": "2024-06-03"})
    assert r.status_code == 404


async def test_reserve_confirm_and_read(client):
    r = await reserve(client)
    assert r.status_code == 201
    ticket = r.json()
    assert ticket["reservation_id"].startswith("res_")
    assert ticket["payment_intent_id"].startswith("mock_pi_")

    r = await client.post(
        f"/reservations/{ticket['reservation_id']}/confirm",
        json={"payment_intent_id": ticket["payment_intent_id"]},
        headers=CUSTOMER,
    )
    assert r.status_code == 200
    booking = r.json()
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "paid"
    assert booking["payment"]["external_payment_reference"] == ticket["payment_intent_id"]

    r = await client.get(f"/bookings/{booking['booking_id']}", headers=CUSTOMER)
    assert r.status_code == 200
    r = await client.get(f"/bookings/{booking['booking_id']}", headers=OTHER_CUSTOMER)
    assert r.status_code == 403

    r = await reserve(client, headers=OTHER_CUSTOMER)
    assert r.status_code == 409
    assert r.json()["detail"] == "slot already booked"


async def test_authentication_and_roles(client):
    assert (await reserve(client, headers={})).status_code == 401
    assert (await reserve(client, headers={"Authorization": "Bearer nope"})).status_code == 401
    assert (await reserve(client, headers=PROVIDER)).status_code == 403


async def test_request_validation(client):
    assert (await reserve(client, location="home")).status_code == 422
    assert (await reserve(client, slot="17:30")).status_code == 400

    r = await client.post("/reservations/res_missing/confirm", json={"payment_intent_id": "x"}, headers=CUSTOMER)
    assert r.status_code == 404


async def test_reschedule_and_status(client, book, publisher):
    booking = await book("cust-1", "svc-cut", "10:00")

    r = await client.post(
        f"/bookings/{booking.booking_id}/reschedule",
        json={"new_date": "2024-06-03", "new_slot": "13:00"},
        headers=CUSTOMER,
    )
    assert r.status_code == 200
    assert r.json()["start_at"].startswith("2024-06-03T13:00")

    r = await client.patch(f"/bookings/{booking.booking_id}/status", json={"status": "completed"}, headers=CUSTOMER)
    assert r.status_code == 403
    r = await client.patch(f"/bookings/{booking.booking_id}/status", json={"status": "completed"}, headers=PROVIDER)
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    r = await client.patch(f"/bookings/{booking.booking_id}/status", json={"status": "pending"}, headers=PROVIDER)
    assert r.status_code == 409


async def test_booking_and_payment_listings(client, book):
    first = await book("cust-1", "svc-cut", "09:00")
    second = await book("cust-1", "svc-cut", "14:00")
    await book("cust-2", "svc-nails", "10:00")

    r = await client.get("/provider/bookings", headers=PROVIDER)
    assert r.status_code == 200
    assert [b["booking_id"] for b in r.json()] == [second.booking_id, first.booking_id]
    assert (await client.get("/provider/bookings", params={"provider_id": "prov-2"}, headers=PROVIDER)).status_code == 403
    assert (await client.get("/provider/bookings", headers=CUSTOMER)).status_code == 403

    r = await client.patch(f"/bookings/{first.booking_id}/status", json={"status": "cancelled"}, headers=PROVIDER)
    assert r.json()["payment"]["status"] == "refunded"

    r = await client.get("/customer/bookings", headers=CUSTOMER)
    assert [b["booking_id"] for b in r.json()] == [second.booking_id]

    r = await client.get("/payments/history", headers=CUSTOMER)
    assert r.status_code == 200
    [item] = r.json()
    assert item["booking_id"] == second.booking_id
    assert item["status"] == "paid"
    assert item["booking_status"] == "confirmed"

    assert (await client.get("/payments/history", headers=OTHER_CUSTOMER)).json() == []


async def test_payment_webhook(client, core, gateway):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    event = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": gateway.intent(ticket.payment_intent_id)}}
    payload = json.dumps(event).encode("utf-8")
    t = int(time.time())
    signature = compute_hmac_sha256(WEBHOOK_SECRET, f"{t}.".encode("utf-8") + payload)

    r = await client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": f"t={t},v1={signature}"})
    assert r.status_code == 200
    assert r.json() == {"received": True, "outcome": "confirmed"}

    r = await client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": f"t={t},v1=bad"})
    assert r.status_code == 400
