"""
End-to-end tests of the HTTP app with fake Pi and chain backends.
"""
import json

import pytest
from fastapi.testclient import TestClient

from dependencies import create_session_token
from main import create_app
from tests.conftest import PAYEE, RECIPIENT, FakeResponse, make_settings

pytestmark = pytest.mark.integration


@pytest.fixture
def client(settings, services):
    app = create_app(settings=settings, services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(settings):
    token = create_session_token({"uid": "user-1", "username": "pioneer"}, settings.session_secret)
    return {"Authorization": f"Bearer {token}"}


def _deliver(client, headers, payment_id="pay-1", quantity=2, recipient=RECIPIENT):
    return client.post(
        "/api/verify-and-deliver",
        json={"paymentId": payment_id, "recipientEvmAddress": recipient, "quantity": quantity},
        headers=headers,
    )


# =======================
# PUBLIC ROUTES
# =======================

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_pi_validation_key_is_plain_text(client):
    response = client.get("/.well-known/pi-validation")

    assert response.status_code == 200
    assert response.text == "validation-key-123"
    assert response.headers["content-type"].startswith("text/plain")


def test_supply_reports_remaining(client):
    assert client.get("/api/nft/supply").json() == {"remaining": 2000, "soldOut": False}


def test_unknown_route(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Route not found"}


# =======================
# AUTH
# =======================

def test_verify_user_issues_session_token(client, monkeypatch):
    seen = {}

    def fake_get(url, headers=None, timeout=None):
        seen["url"] = url
        seen["auth"] = headers["Authorization"]
        return FakeResponse(200, json.dumps({"uid": "user-1", "username": "pioneer"}))

    monkeypatch.setattr("routers.auth.requests.get", fake_get)

    response = client.post("/api/verify-user", json={"jwt": "pi-access-token"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["user"]["uid"] == "user-1"
    assert body["token"]
    assert seen == {"url": "https://api.minepi.com/v2/me", "auth": "Bearer pi-access-token"}


def test_verify_user_rejects_bad_pi_token(client, monkeypatch):
    monkeypatch.setattr(
        "routers.auth.requests.get", lambda url, headers=None, timeout=None: FakeResponse(401, "unauthorized")
    )

    response = client.post("/api/verify-user", json={"jwt": "expired"})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid Pi JWT"}


def test_deliver_requires_session(client):
    response = _deliver(client, {})

    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized. Login with Pi first."


def test_deliver_rejects_forged_session(client):
    response = _deliver(client, {"Authorization": "Bearer not-a-token"})

    assert response.status_code == 403


# =======================
# DELIVERY
# =======================

def test_deliver_and_repeat(client, auth_headers, pi_session, chain):
    pi_session.add_payment("pay-1", amount="8")

    first = _deliver(client, auth_headers)
    second = _deliver(client, auth_headers)

    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["state"] == "COMMITTED"
    assert body["message"] == "2 NFT(s) delivered!"
    assert body["nftsOwnedNow"] == 2
    assert second.status_code == 200
    assert second.json()["txHash"] == body["txHash"]
    assert second.json()["replayed"] is True
    assert len(chain.broadcasts) == 1
    assert client.get("/api/nft/supply").json()["remaining"] == 1998


def test_deliver_rejects_invalid_address(client, auth_headers):
    response = _deliver(client, auth_headers, recipient="0x1234")

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["errors"][0]["loc"][-1] == "recipientEvmAddress"


def test_deliver_rejects_quantity_above_limit(client, auth_headers, pi_session):
    pi_session.add_payment("pay-1", amount="100")

    response = _deliver(client, auth_headers, quantity=11)

    assert response.status_code == 400
    assert pi_session.calls == []


def test_deliver_reports_cap_exceeded(client, auth_headers, pi_session, chain):
    chain.balances[RECIPIENT] = 9
    pi_session.add_payment("pay-1", amount="8")

    response = _deliver(client, auth_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["reason"] == "cap_exceeded"
    assert body["error"] == "Wallet NFT cap exceeded (max 10 per wallet). You currently own 9."
    assert body["detail"] == {"current": 9, "cap": 10}


def test_deliver_reports_unknown_payment_as_bad_request(client, auth_headers):
    response = _deliver(client, auth_headers, payment_id="missing")

    assert response.status_code == 400
    assert response.json()["reason"] == "upstream_unavailable"


def test_deliver_reports_pending_payment(client, auth_headers, pi_session):
    pi_session.add_payment("pay-1", completed=False)

    response = _deliver(client, auth_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == {"rejection": "status"}


def test_uncertain_delivery_is_accepted_then_resolved(client, auth_headers, pi_session, chain):
    chain.mode = "timeout"
    pi_session.add_payment("pay-1", amount="8")

    response = _deliver(client, auth_headers)

    assert response.status_code == 202
    tx_hash = response.json()["txHash"]
    assert response.json()["state"] == "UNCERTAIN"

    chain.mine(tx_hash, status=1)
    status = client.get("/api/deliveries/pay-1", headers=auth_headers)

    assert status.status_code == 200
    assert status.json()["state"] == "COMMITTED"
    assert status.json()["txHash"] == tx_hash


def test_delivery_status_unknown_payment(client, auth_headers):
    response = client.get("/api/deliveries/never-seen", headers=auth_headers)

    assert response.status_code == 404


def test_approve_payment(client, pi_session):
    pi_session.add_payment("pay-1", completed=False)

    response = client.post("/api/pi/approve-payment", json={"paymentId": "pay-1", "evmAddress": RECIPIENT})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert pi_session.calls[-1]["url"].endswith("/pay-1/approve")


def test_approve_unknown_payment(client):
    response = client.post("/api/pi/approve-payment", json={"paymentId": "missing", "evmAddress": RECIPIENT})

    assert response.status_code == 400


def test_create_payment_prices_quantity(client, pi_session):
    response = client.post("/api/pi/create-payment", json={"evmAddress": RECIPIENT, "quantity": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["payment"]["identifier"] == "pi-created-1"
    assert pi_session.created == [
        {
            "amount": "8",
            "memo": "NFT Purchase (2)",
            "metadata": {"evmAddress": RECIPIENT, "quantity": 2},
            "to_user_uid": PAYEE,
        }
    ]
    assert not any(call["url"].endswith("/approve") for call in pi_session.calls)


@pytest.mark.parametrize("quantity", [0, 11])
def test_create_payment_rejects_quantity_out_of_range(client, pi_session, quantity):
    response = client.post("/api/pi/create-payment", json={"evmAddress": RECIPIENT, "quantity": quantity})

    assert response.status_code == 400
    assert pi_session.calls == []


def test_create_payment_rejects_invalid_address(client, pi_session):
    response = client.post("/api/pi/create-payment", json={"evmAddress": "0x1234", "quantity": 1})

    assert response.status_code == 400
    assert pi_session.calls == []


def test_create_payment_reports_processor_error(client, pi_session):
    pi_session.responses["payments"] = FakeResponse(500, json.dumps({"error": "internal"}))

    response = client.post("/api/pi/create-payment", json={"evmAddress": RECIPIENT, "quantity": 1})

    assert response.status_code == 400
    assert response.json()["error"].startswith("Failed to create Pi payment")


# =======================
# CORS
# =======================

def _preflight(client, origin):
    return client.options(
        "/api/pi/create-payment",
        headers={"Origin": origin, "Access-Control-Request-Method": "POST"},
    )


def test_cors_allows_configured_frontend(services):
    app = create_app(settings=make_settings(frontend_url="https://shop.example"), services=services)
    with TestClient(app) as client:
        allowed = _preflight(client, "https://shop.example")
        denied = _preflight(client, "https://evil.example")

    assert allowed.headers["access-control-allow-origin"] == "https://shop.example"
    assert "access-control-allow-origin" not in denied.headers
