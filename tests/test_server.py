"""
End-to-end HTTP flows through the FastAPI app.
"""
import time

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from eventpass import signature
from eventpass.errors import ConfigError
from eventpass.infra import timings
from eventpass.model.orm import Base, Registration
from eventpass.server import create_app

from conftest import AUTH_SECRET, WEBHOOK_SECRET, seed_rows


def bearer(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, AUTH_SECRET, algorithm="HS256")
    return {"authorization": f"Bearer {token}"}


ALICE = bearer("u1")
BOB = bearer("u2")


@pytest.fixture
def sync_engine(db_url):
    engine = create_engine(db_url)
    Base.metadata.create_all(engine)
    with Session(engine) as s, s.begin():
        s.add_all(seed_rows(time.time()))
    yield engine
    engine.dispose()


@pytest.fixture
def client(test_settings, sync_engine, gateway, dispatcher):
    timings.reset()
    app = create_app(test_settings, gateway=gateway, dispatcher=dispatcher)
    with TestClient(app) as c:
        yield c


def registrations(engine) -> int:
    with Session(engine) as s:
        return s.execute(
            select(func.count()).select_from(Registration)
        ).scalar_one()


def checkout(client, headers=ALICE, event_id="evt_open"):
    r = client.post(f"/api/payments/create-order/{event_id}", headers=headers)
    assert r.status_code == 200, r.text
    order = r.json()
    r = client.post(f"/mockpay/{order['paymentId']}/complete",
                    headers=headers)
    assert r.status_code == 200, r.text
    return order, r.json()


def test_create_order(client):
    r = client.post("/api/payments/create-order/evt_open", headers=ALICE)

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["amount"] == 50000
    assert body["currency"] == "INR"
    assert body["gatewayPublicKey"] == "rzp_test_key"
    assert body["orderId"].startswith("order_")


def test_create_order_errors(client):
    r = client.post("/api/payments/create-order/evt_missing", headers=ALICE)
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"

    r = client.post("/api/payments/create-order/evt_closed", headers=ALICE)
    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "error": "RegistrationClosed",
        "message": "Registrations are closed for this event",
    }


def test_requires_bearer_token(client):
    assert client.post("/api/payments/create-order/evt_open").status_code \
        == 401
    forged = jwt.encode({"sub": "u1"}, "not-the-secret", algorithm="HS256")
    r = client.post("/api/payments/create-order/evt_open",
                    headers={"authorization": f"Bearer {forged}"})
    assert r.status_code == 401


def test_verify_then_duplicate(client, dispatcher, sync_engine):
    order, callback = checkout(client)

    r = client.post("/api/payments/verify", json=callback, headers=ALICE)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["dispatched"] is True
    assert body["registrationId"]

    r = client.post("/api/payments/verify", json=callback, headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "AlreadyFinalized"
    assert r.json()["message"] == "Payment already verified"

    assert len(dispatcher.sent) == 1
    assert registrations(sync_engine) == 1

    r = client.get(f"/api/payments/{order['paymentId']}", headers=ALICE)
    assert r.status_code == 200
    status = r.json()
    assert status["status"] == "paid"
    assert status["gatewayPaymentId"] == callback["gatewayPaymentId"]
    assert status["finalizedAt"] is not None

    r = client.post("/api/payments/create-order/evt_open", headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "AlreadyRegistered"


def test_verify_with_bad_signature(client, dispatcher):
    order, callback = checkout(client)
    callback["signature"] = "00" * 32

    r = client.post("/api/payments/verify", json=callback, headers=ALICE)

    assert r.status_code == 400
    assert r.json()["error"] == "InvalidSignature"
    status = client.get(f"/api/payments/{order['paymentId']}",
                        headers=ALICE).json()
    assert status["status"] == "created"
    assert dispatcher.sent == []


def test_verify_missing_fields(client):
    r = client.post("/api/payments/verify", json={"paymentId": "x"},
                    headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_verify_body_must_be_a_json_object(client):
    for kw in ({"json": ["x"]}, {"content": b"{not json"}):
        r = client.post("/api/payments/verify", headers=ALICE, **kw)
        assert r.status_code == 400
        assert r.json() == {
            "success": False,
            "error": "ValidationError",
            "message": "Missing payment details",
        }


def test_verify_after_gateway_failure(client, dispatcher):
    order, callback = checkout(client)
    body = (
        '{"event":"payment.failed","order_id":"%s","reason":"declined"}'
        % order["orderId"]
    ).encode()
    r = client.post("/payments/webhook", content=body, headers={
        "x-gateway-signature": signature.sign_webhook(WEBHOOK_SECRET, body),
    })
    assert r.json() == {"ok": True, "status": "failed"}

    r = client.post("/api/payments/verify", json=callback, headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "AlreadyFinalized"
    assert r.json()["message"] == "Payment already failed"
    assert dispatcher.sent == []


def test_my_registrations(client):
    r = client.get("/api/registrations/my", headers=ALICE)
    assert r.json() == {"items": []}
    assert client.get("/api/registrations/my").status_code == 401

    _, callback = checkout(client)
    reg_id = client.post("/api/payments/verify", json=callback,
                         headers=ALICE).json()["registrationId"]
    checkout(client, headers=BOB)

    (item,) = client.get("/api/registrations/my",
                         headers=ALICE).json()["items"]
    assert item["registrationId"] == reg_id
    assert item["eventId"] == "evt_open"
    assert item["status"] == "paid"
    assert item["credentialIssued"] is True
    assert item["createdAt"]
    assert "credential_token" not in item and "token" not in item

    # an unpaid order is not a registration
    assert client.get("/api/registrations/my",
                      headers=BOB).json() == {"items": []}


def test_payment_is_private_to_its_owner(client):
    order, callback = checkout(client)

    assert client.get(f"/api/payments/{order['paymentId']}",
                      headers=BOB).status_code == 404
    r = client.post("/api/payments/verify", json=callback, headers=BOB)
    assert r.status_code == 404


def test_webhook_settles_payment(client, dispatcher):
    order, callback = checkout(client)
    body = (
        '{"event":"payment.captured","order_id":"%s","payment_id":"pay_w1"}'
        % order["orderId"]
    ).encode()
    headers = {
        "content-type": "application/json",
        "x-gateway-signature": signature.sign_webhook(WEBHOOK_SECRET, body),
    }

    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.json() == {"ok": True, "status": "paid"}

    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.json() == {"ok": True, "idempotent": True, "status": "paid"}

    # the client's own callback arrives late and loses
    r = client.post("/api/payments/verify", json=callback, headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "AlreadyFinalized"
    assert len(dispatcher.sent) == 1


def test_webhook_rejects_bad_signature(client):
    r = client.post("/payments/webhook", content=b'{"event":"x"}',
                    headers={"x-gateway-signature": "nope"})
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidSignature"


def test_admin_requires_login(client):
    assert client.get("/api/admin/payments").status_code == 401
    r = client.post("/admin/login",
                    data={"username": "admin", "password": "wrong"})
    assert r.status_code == 401
    assert client.get("/api/admin/payments").status_code == 401


def test_admin_flow(client, dispatcher):
    _, callback = checkout(client)
    reg_id = client.post("/api/payments/verify", json=callback,
                         headers=ALICE).json()["registrationId"]
    checkout(client, headers=BOB)

    r = client.post("/admin/login",
                    data={"username": "admin", "password": "s3cret"})
    assert r.status_code == 200

    r = client.get("/api/admin/payments", params={"limit": 10})
    body = r.json()
    assert body["total"] == 2
    assert {p["status"] for p in body["items"]} == {"paid", "created"}
    assert {p["userId"] for p in body["items"]} == {"u1", "u2"}

    r = client.post(f"/api/admin/registrations/{reg_id}/reissue")
    assert r.json() == {"ok": True, "registrationId": reg_id,
                        "dispatched": True}
    assert len(dispatcher.sent) == 2

    r = client.post("/api/admin/registrations/nope/reissue")
    assert r.status_code == 404

    kinds = {t["kind"] for t in client.get("/api/admin/timings")
             .json()["items"]}
    assert "payment.cas" in kinds

    client.post("/admin/logout")
    assert client.get("/api/admin/timings").status_code == 401


def test_create_app_refuses_shared_secrets(test_settings):
    bad = test_settings.__class__(
        database_url=test_settings.database_url,
        ticket_secret=AUTH_SECRET,
        auth_secret=AUTH_SECRET,
    )
    with pytest.raises(ConfigError):
        create_app(bad)
