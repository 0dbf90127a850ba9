"""Tests for the HTTP surface."""

import json
from decimal import Decimal

import pytest

from relaycore.api.deps import get_http_client, settings_dep
from relaycore.config import Settings
from relaycore.main import app

STRIPE_EVENT = {
    "id": "evt_api_1",
    "type": "checkout.session.completed",
    "data": {"object": {"amount_total": 150000, "metadata": {"company_id": "C1"}}},
}


def use_destination(dest):
    async def _client():
        async with dest.client() as client:
            yield client

    app.dependency_overrides[get_http_client] = _client


async def create_endpoint(client, **kwargs):
    data = {"company_id": "C1", "url": "https://hooks.example.com/in", "secret": "s3cret-key"}
    data.update(kwargs)
    resp = await client.post("/api/v1/webhooks/", json=data)
    assert resp.status_code == 201
    return resp.json()


async def enqueue(client, event_type="deposit.completed", payload=None):
    resp = await client.post("/api/v1/webhooks/events", json={
        "company_id": "C1", "event_type": event_type, "payload": payload or {"amount": 1500},
    })
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Payments ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_payment_webhook_is_idempotent(client):
    headers = {"stripe-signature": "t=1,v1=x"}
    first = await client.post("/api/v1/payments/webhook", content=json.dumps(STRIPE_EVENT), headers=headers)
    second = await client.post("/api/v1/payments/webhook", content=json.dumps(STRIPE_EVENT), headers=headers)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["new_balance"] == 1500.0
    assert second.status_code == 200
    assert second.json()["message"] == "Event already processed"
    assert second.json()["new_balance"] == 1500.0


@pytest.mark.asyncio
async def test_payment_webhook_rejects_missing_company(client):
    body = {"reference": "dep-1", "type": "internal_deposit", "amount": 10}
    resp = await client.post("/api/v1/payments/webhook", json=body)
    assert resp.status_code == 400
    assert "company_id" in resp.json()["error"]


@pytest.mark.asyncio
async def test_payment_webhook_rejects_invalid_json(client):
    resp = await client.post("/api/v1/payments/webhook", content=b"{oops")
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.asyncio
@pytest.mark.parametrize("literal", ["NaN", "Infinity"])
async def test_payment_webhook_rejects_non_finite_amount(client, literal):
    content = f'{{"type":"internal_deposit","reference":"r-{literal}","company_id":"C1","amount":{literal}}}'
    resp = await client.post("/api/v1/payments/webhook", content=content)
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.asyncio
async def test_payment_webhook_manual_deposit(client):
    body = {"reference": "dep-2", "type": "internal_deposit", "amount": 42.5, "company_id": "C7"}
    resp = await client.post("/api/v1/payments/webhook", json=body)
    assert resp.status_code == 200
    assert Decimal(str(resp.json()["new_balance"])) == Decimal("42.5")


@pytest.mark.asyncio
async def test_payment_webhook_surfaces_unexpected_errors(client, monkeypatch):
    from relaycore.services.ledger import LedgerService

    async def broken(self, *args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(LedgerService, "credit", broken)
    resp = await client.post(
        "/api/v1/payments/webhook", content=json.dumps(STRIPE_EVENT), headers={"stripe-signature": "x"}
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "ledger unavailable"}


# ── Destinations ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_endpoint_crud(client):
    created = await create_endpoint(client, events=["deposit.completed"])
    assert created["is_active"] is True
    assert created["failure_count"] == 0
    assert "secret" not in created

    listed = await client.get("/api/v1/webhooks/", params={"company_id": "C1"})
    assert [w["id"] for w in listed.json()] == [created["id"]]

    patched = await client.patch(f"/api/v1/webhooks/{created['id']}", json={"is_active": False})
    assert patched.json()["is_active"] is False

    deleted = await client.delete(f"/api/v1/webhooks/{created['id']}")
    assert deleted.status_code == 204
    missing = await client.get(f"/api/v1/webhooks/{created['id']}")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_create_webhook_invalid_event(client):
    resp = await client.post("/api/v1/webhooks/", json={
        "company_id": "C1", "url": "https://example.com/hook",
        "secret": "s3cret-key", "events": ["invalid.event.type"],
    })
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_list_event_types(client):
    resp = await client.get("/api/v1/webhooks/event-types")
    assert resp.status_code == 200
    assert "deposit.completed" in resp.json()


# ── Delivery ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_deliver_success(client, destination):
    await create_endpoint(client)
    queued = await enqueue(client)
    assert len(queued) == 1
    use_destination(destination(200))

    resp = await client.post("/api/v1/webhooks/deliver", json={"event_id": queued[0]["id"]})

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["status"] == "sent"


@pytest.mark.asyncio
async def test_deliver_failure_returns_500_with_schedule(client, destination):
    endpoint = await create_endpoint(client)
    queued = await enqueue(client)
    use_destination(destination(503))

    resp = await client.post("/api/v1/webhooks/deliver", json={"event_id": queued[0]["id"]})

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["status"] == "retrying"
    assert body["next_retry_at"] is not None

    history = await client.get(f"/api/v1/webhooks/{endpoint['id']}/events")
    assert history.json()[0]["attempts"] == 1
    assert history.json()[0]["response_status"] == 503


@pytest.mark.asyncio
async def test_deliver_terminal_event_returns_200(client, destination):
    await create_endpoint(client)
    queued = await enqueue(client)
    dest = destination(200)
    use_destination(dest)

    await client.post("/api/v1/webhooks/deliver", json={"event_id": queued[0]["id"]})
    resp = await client.post("/api/v1/webhooks/deliver", json={"event_id": queued[0]["id"]})

    assert resp.status_code == 200
    assert resp.json()["status"] == "sent"
    assert len(dest.requests) == 1


@pytest.mark.asyncio
async def test_deliver_inactive_destination_returns_400(client, destination):
    endpoint = await create_endpoint(client)
    queued = await enqueue(client)
    await client.patch(f"/api/v1/webhooks/{endpoint['id']}", json={"is_active": False})
    dest = destination(200)
    use_destination(dest)

    resp = await client.post("/api/v1/webhooks/deliver", json={"event_id": queued[0]["id"]})

    assert resp.status_code == 400
    assert dest.requests == []


@pytest.mark.asyncio
async def test_deliver_unknown_event_returns_404(client):
    resp = await client.post("/api/v1/webhooks/deliver", json={"event_id": "nope"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_test_ping(client, destination):
    endpoint = await create_endpoint(client)
    dest = destination(200)
    use_destination(dest)

    resp = await client.post(f"/api/v1/webhooks/{endpoint['id']}/test")

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert dest.requests[0].headers["X-Webhook-Event"] == "test.ping"


# ── Service key ──────────────────────────────────────────
@pytest.mark.asyncio
async def test_service_key_required_when_configured(client):
    app.dependency_overrides[settings_dep] = lambda: Settings(service_api_key="internal-key")
    try:
        denied = await client.get("/api/v1/webhooks/event-types")
        allowed = await client.get(
            "/api/v1/webhooks/event-types", headers={"Authorization": "Bearer internal-key"}
        )
    finally:
        app.dependency_overrides.pop(settings_dep, None)
    assert denied.status_code == 401
    assert allowed.status_code == 200
