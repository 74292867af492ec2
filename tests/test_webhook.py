import base64
import json

import httpx
import pytest

from racenight import server

from conftest import full_cart_session

WEBHOOK = "/payments/webhook"
ADMIN = ("admin", "supasecret")


def _register(**kw):
    s = full_cart_session()
    return server.adapter.register_session(
        s.line_items,
        metadata=kw.pop("metadata", s.metadata),
        customer_email="jane@example.com",
        amount_subtotal=22700,
        amount_total=22855,
        **kw,
    )


def _post(client, event, signature=None):
    body = json.dumps(event).encode()
    headers = {"content-type": "application/json"}
    sig = signature if signature is not None else server.adapter.sign(body)
    if sig:
        headers["x-mockpay-signature"] = sig
    return client.post(WEBHOOK, content=body, headers=headers)


def test_missing_signature_rejected(client):
    event = server.adapter.completed_event("cs_nope")
    r = _post(client, event, signature="")
    assert r.status_code == 400
    assert "error" in r.json()


def test_bad_signature_rejected(client):
    event = server.adapter.completed_event("cs_nope")
    forged = base64.b64encode(b"x" * 32).decode()
    r = _post(client, event, signature=forged)
    assert r.status_code == 400


def test_signed_garbage_rejected(client):
    body = b"not json"
    r = client.post(WEBHOOK, content=body, headers={
        "x-mockpay-signature": server.adapter.sign(body)})
    assert r.status_code == 400


@pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
def test_wrong_method(client, method):
    r = client.request(method, WEBHOOK)
    assert r.status_code == 405


def test_other_event_types_acknowledged(client):
    event = {"id": "evt_other", "type": "payment_intent.created",
             "data": {"object": {"id": "pi_1"}}}
    r = _post(client, event)
    assert r.status_code == 200
    assert r.json() == {"received": True,
                        "ignored": "payment_intent.created"}


def test_completed_event_creates_order(client):
    session = _register()
    r = _post(client, server.adapter.completed_event(session.id))
    assert r.status_code == 200
    body = r.json()
    assert body["received"] is True
    assert body["gaps"] == 0
    order_id = body["orderId"]

    r = client.get(f"/api/orders/{order_id}")
    assert r.status_code == 200
    order = r.json()
    assert order["session_id"] == session.id
    assert order["total_paid"] == "228.55"
    assert order["processing_fee"] == "1.55"
    assert order["covered_fees"] is True
    assert order["purchaser"]["first_name"] == "Jane"
    assert len(order["raffle_tickets"]) == 7
    assert order["event_tickets"][0]["table_name"] == "Table 7"

    r = client.get(f"/api/orders/by-session/{session.id}")
    assert r.json()["order_id"] == order_id


def test_redelivery_creates_one_order(client):
    session = _register()
    event = server.adapter.completed_event(session.id)
    first = _post(client, event).json()
    for _ in range(3):
        again = _post(client, event)
        assert again.status_code == 200
        assert again.json()["idempotent"] is True

    # a distinct event for the same session is deduplicated by session id
    other = _post(client, server.adapter.completed_event(session.id)).json()
    assert other["orderId"] == first["orderId"]

    orders = client.get("/api/admin/orders", auth=ADMIN).json()["items"]
    assert [o["session_id"] for o in orders].count(session.id) == 1
    detail = client.get(f"/api/orders/{first['orderId']}").json()
    assert len(detail["raffle_tickets"]) == 7


def test_malformed_metadata_still_persists(client):
    session = _register(metadata={
        "purchaserName": "Jane Doe",
        "horses": "[{\"name\": \"Thun",
        "programAds": "}{",
        "raffleOwners": "",
    })
    r = _post(client, server.adapter.completed_event(session.id))
    assert r.status_code == 200
    detail = client.get(f"/api/orders/{r.json()['orderId']}").json()
    assert detail["horses"][0]["horse_name"] == "Horse 1"
    assert detail["program_ads"][0]["business_name"] == "Acme Bakery"
    assert {t["owner_name"] for t in detail["raffle_tickets"]} == {"Jane Doe"}


def test_unknown_session_is_acknowledged(client):
    r = _post(client, server.adapter.completed_event("cs_mock_missing"))
    assert r.status_code == 200
    assert r.json()["error"] == "processing failed"
    assert client.get(
        "/api/orders/by-session/cs_mock_missing").status_code == 404


def test_inventory_and_admin_feeds(client):
    session = _register()
    _post(client, server.adapter.completed_event(session.id))

    inv = client.get("/api/inventory").json()
    assert inv["raffle_tickets"]["sold"] >= 7

    assert client.get("/api/admin/orders").status_code == 401
    assert client.get("/api/admin/orders",
                      auth=("admin", "wrong")).status_code == 401

    timings = client.get("/api/admin/timings", auth=ADMIN).json()["items"]
    assert "webhook.verify" in {t["kind"] for t in timings}

    gaps = client.get("/api/admin/gaps", auth=ADMIN)
    assert gaps.status_code == 200
    assert gaps.json()["items"] == []


def test_mockpay_session_and_emit(client):
    r = client.post("/mockpay/sessions", json={
        "line_items": [
            {"description": "Cash Donation", "quantity": 1,
             "amount_total": 1000},
        ],
        "metadata": {"purchaserName": "Pat Smith"},
        "customer_email": "pat@example.com",
    })
    assert r.status_code == 200
    psid = r.json()["session_id"]
    assert r.json()["amount_total"] == 1000

    # deliver the signed event back into the same app
    original = server.app.state.http
    server.app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server.app),
        base_url="http://testserver",
    )
    try:
        r = client.post(f"/mockpay/{psid}/emit")
    finally:
        server.app.state.http = original
    assert r.status_code == 200
    assert r.json()["delivered"] is True
    assert r.json()["response"]["orderId"]

    order = client.get(f"/api/orders/by-session/{psid}").json()
    assert order["donations"][0]["amount"] == "10.00"
    assert order["purchaser"]["last_name"] == "Smith"


def test_mockpay_rejects_empty_cart(client):
    r = client.post("/mockpay/sessions", json={"line_items": []})
    assert r.status_code == 400
