import httpx
import pytest

from booking_service.main import app
from booking_service.status import BookingStatus

from conftest import ORIGIN, provider_record


def auth(sub: str, *roles: str) -> dict:
    return {"X-User-Sub": sub, "X-User-Roles": ",".join(roles)}


CUSTOMER = auth("cust-1", "customer")
ADMIN = auth("admin-1", "admin")


@pytest.fixture
async def client(core):
    app.state.core = core
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.core = None


async def create_order(client, **extra):
    body = {
        "serviceId": "plumbing",
        "totalAmount": "100.00",
        "location": {"latitude": ORIGIN[0], "longitude": ORIGIN[1]},
    }
    body.update(extra)
    return await client.post("/orders", json=body, headers=CUSTOMER)


@pytest.mark.anyio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "booking-service", "events_enabled": True}


@pytest.mark.anyio
async def test_create_order(client, directory):
    directory.providers = [provider_record("p1", km=1), provider_record("p2", km=2)]

    resp = await create_order(client, urgency="high")

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "matched"
    assert body["customerId"] == "cust-1"
    assert body["totalAmount"] == "100.00"
    assert body["paymentStatus"] == "captured"
    assert resp.headers["X-Request-ID"]


@pytest.mark.anyio
async def test_providers_cannot_create_orders(client):
    resp = await client.post(
        "/orders",
        json={"serviceId": "plumbing", "totalAmount": "1", "location": {"latitude": 0, "longitude": 0}},
        headers=auth("prov-1", "provider"),
    )

    assert resp.status_code == 403


@pytest.mark.anyio
async def test_second_acceptance_is_a_conflict(client, directory):
    directory.providers = [provider_record("p1", km=1), provider_record("p2", km=2)]
    order = (await create_order(client)).json()

    resp = await client.get(f"/orders/{order['id']}/job-requests", headers=CUSTOMER)
    offers = {jr["providerId"]: jr["id"] for jr in resp.json()}

    first = await client.post(f"/job-requests/{offers['p1']}/accept", headers=auth("p1", "provider"))
    second = await client.post(f"/job-requests/{offers['p2']}/accept", headers=auth("p2", "provider"))

    assert first.status_code == 200
    assert first.json()["status"] == "accepted"
    assert first.json()["providerId"] == "p1"
    assert second.status_code == 409
    assert second.json()["reason"] == "already_assigned"


@pytest.mark.anyio
async def test_invalid_transition(client, seed):
    booking = await seed(BookingStatus.ACCEPTED)

    resp = await client.patch(
        f"/orders/{booking.id}/status", json={"newStatus": "arrived"}, headers=auth("prov-1", "provider")
    )

    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_transition"


@pytest.mark.anyio
async def test_cancel_replays_with_idempotency_key(client, seed, gateway):
    booking = await seed(BookingStatus.MATCHED)
    headers = {**CUSTOMER, "Idempotency-Key": "cancel-123"}

    first = await client.post(f"/orders/{booking.id}/cancel", json={"reason": "changed_mind"}, headers=headers)
    second = await client.post(f"/orders/{booking.id}/cancel", json={"reason": "changed_mind"}, headers=headers)

    assert first.status_code == 200
    assert first.json() == second.json()
    assert first.json()["refundAmount"] == "100.00"
    assert first.json()["cancellationFee"] == "0.00"
    assert len(gateway.refunds) == 1


@pytest.mark.anyio
async def test_in_progress_cannot_be_cancelled(client, seed):
    booking = await seed(BookingStatus.IN_PROGRESS)

    resp = await client.post(f"/orders/{booking.id}/cancel", json={"reason": "changed_mind"}, headers=CUSTOMER)

    assert resp.status_code == 400
    assert resp.json()["reason"] == "not_cancellable"
    assert (await client.get(f"/orders/{booking.id}", headers=CUSTOMER)).json()["status"] == "in_progress"


@pytest.mark.anyio
async def test_identity_headers_are_required(client, seed):
    booking = await seed(BookingStatus.MATCHED)

    assert (await client.get(f"/orders/{booking.id}")).status_code == 403
    assert (await client.get(f"/orders/{booking.id}", headers={"X-User-Sub": "cust-1"})).status_code == 403
    assert (await client.get(f"/orders/{booking.id}", headers=auth("cust-2", "customer"))).status_code == 403


@pytest.mark.anyio
async def test_unknown_order(client):
    resp = await client.get("/orders/does-not-exist", headers=ADMIN)

    assert resp.status_code == 404
    assert resp.json()["reason"] == "booking_not_found"


@pytest.mark.anyio
async def test_confirm_and_fetch_receipt(client, seed):
    booking = await seed(BookingStatus.WORK_COMPLETED)

    confirmed = await client.post(
        f"/orders/{booking.id}/confirm-completion", json={"rating": 4, "review": "ok"}, headers=CUSTOMER
    )
    receipt = await client.post(f"/orders/{booking.id}/receipt", headers=CUSTOMER)
    again = await client.post(f"/orders/{booking.id}/receipt", headers=CUSTOMER)

    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "completed"
    assert receipt.status_code == 200
    assert receipt.json()["receiptNumber"] == again.json()["receiptNumber"]
    assert receipt.json()["snapshot"]["rating"] == 4


@pytest.mark.anyio
async def test_admin_refund(client, seed, clock):
    booking = await seed(BookingStatus.COMPLETED, completed_at=clock())

    forbidden = await client.post(f"/orders/{booking.id}/refund", json={"amount": "10"}, headers=CUSTOMER)
    refunded = await client.post(f"/orders/{booking.id}/refund", json={"amount": "10"}, headers=ADMIN)

    assert forbidden.status_code == 403
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"
    assert refunded.json()["paymentStatus"] == "refunded"
