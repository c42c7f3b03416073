"""
HTTP tests for the Subscriber Boost API

Tests cover:
1. Registration and X-User-Id authentication
2. Deposit lifecycle and ledger history
3. Channel verification, pricing and order lifecycle
4. Error mapping (400 / 401 / 404 / 409)
5. Dashboard, analytics and referral stats
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.index import create_app
from common.config import Settings

CHANNEL_URL = "https://www.youtube.com/@creatorchannel"


@pytest.fixture
def client():
    app = create_app(Settings(tick_interval_seconds=3600.0))
    with TestClient(app) as test_client:
        yield test_client


def register(client, email="creator@example.com", referral_code=None) -> dict:
    payload = {"name": "Creator", "email": email}
    if referral_code:
        payload["referral_code"] = referral_code
    response = client.post("/users", json=payload)
    assert response.status_code == 201
    user = response.json()
    return {"X-User-Id": user["id"]}


def fund(client, headers, amount) -> None:
    deposit = client.post("/payments/deposits", json={"amount": amount}, headers=headers)
    assert deposit.status_code == 201
    completed = client.post(f"/payments/deposits/{deposit.json()['id']}/complete", json={"gateway_payment_id": "pay_1"})
    assert completed.status_code == 200


def verify(client, headers) -> None:
    response = client.post("/channels/verify", json={"channel_url": CHANNEL_URL}, headers=headers)
    assert response.status_code == 200


class TestSystem:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:
    """X-User-Id identifies the caller."""

    def test_missing_header(self, client):
        assert client.get("/users/me").status_code == 401

    def test_malformed_header(self, client):
        assert client.get("/users/me", headers={"X-User-Id": "not-a-uuid"}).status_code == 401

    def test_unknown_user(self, client):
        assert client.get("/users/me", headers={"X-User-Id": str(uuid4())}).status_code == 401

    def test_known_user(self, client):
        headers = register(client)

        response = client.get("/users/me", headers=headers)

        assert response.status_code == 200
        assert response.json()["email"] == "creator@example.com"

    def test_duplicate_registration(self, client):
        register(client)

        response = client.post("/users", json={"name": "Again", "email": "creator@example.com"})

        assert response.status_code == 409


class TestWallet:
    """Deposits, balance and ledger history."""

    def test_deposit_flow(self, client):
        headers = register(client)

        deposit = client.post("/payments/deposits", json={"amount": 500, "payment_method": "card"}, headers=headers)
        assert deposit.json()["status"] == "pending"
        assert Decimal(client.get("/users/me/balance", headers=headers).json()["balance"]) == 0

        client.post(f"/payments/deposits/{deposit.json()['id']}/complete", json={})

        balance = client.get("/users/me/balance", headers=headers).json()
        assert Decimal(balance["balance"]) == Decimal("500")

    def test_complete_unknown_deposit(self, client):
        response = client.post(f"/payments/deposits/{uuid4()}/complete", json={})

        assert response.status_code == 404

    def test_complete_failed_deposit_conflicts(self, client):
        headers = register(client)
        deposit = client.post("/payments/deposits", json={"amount": 500}, headers=headers).json()
        client.post(f"/payments/deposits/{deposit['id']}/fail", json={"reason": "card declined"})

        response = client.post(f"/payments/deposits/{deposit['id']}/complete", json={})

        assert response.status_code == 409

    def test_deposit_below_minimum(self, client):
        headers = register(client)

        response = client.post("/payments/deposits", json={"amount": 5}, headers=headers)

        assert response.status_code == 400

    def test_referral_bonus_in_ledger(self, client):
        referrer_headers = register(client, "referrer@example.com")
        code = client.get("/users/me", headers=referrer_headers).json()["referral_code"]
        register(client, "friend@example.com", referral_code=code)

        history = client.get(
            "/users/me/ledger", params={"kind": "referral_bonus"}, headers=referrer_headers
        ).json()

        assert history["total_count"] == 1
        assert Decimal(history["current_balance"]) == Decimal("50")

    def test_withdrawal_insufficient_funds(self, client):
        headers = register(client)
        fund(client, headers, 100)

        response = client.post("/payments/withdrawals", json={"amount": 200, "upi_id": "creator@upi"}, headers=headers)

        assert response.status_code == 400
        assert Decimal(response.json()["detail"]["short_by"]) == Decimal("100")


class TestOrders:
    """Order lifecycle over HTTP."""

    def test_price_quote(self, client):
        response = client.post("/orders/price", json={"subscribers": 5_000})

        assert response.status_code == 200
        assert response.json()["final_price"] == 90
        assert response.json()["discount_percentage"] == 10

    def test_price_out_of_range(self, client):
        assert client.post("/orders/price", json={"subscribers": 10}).status_code == 400

    def test_create_order(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)

        response = client.post("/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers)

        assert response.status_code == 201
        body = response.json()
        assert body["order"]["status"] == "processing"
        assert body["order"]["price"] == 10
        assert Decimal(body["balance"]) == Decimal("990")

        detail = client.get(f"/orders/{body['order']['id']}", headers=headers).json()
        assert detail["time_remaining"] == "calculating"
        assert client.get("/orders/active/count", headers=headers).json() == {"count": 1}

        events = client.get("/users/me/events", headers=headers).json()
        assert [e["type"] for e in events] == ["order-created"]

    def test_create_order_insufficient_funds(self, client):
        headers = register(client)
        fund(client, headers, 10)
        verify(client, headers)

        response = client.post("/orders", json={"channel_url": CHANNEL_URL, "subscribers": 1_000}, headers=headers)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert Decimal(detail["required_amount"]) == Decimal("20")
        assert Decimal(detail["current_balance"]) == Decimal("10")
        assert Decimal(detail["short_by"]) == Decimal("10")
        assert client.get("/orders", headers=headers).json()["total_count"] == 0

    def test_create_order_unverified_channel(self, client):
        headers = register(client)
        fund(client, headers, 1000)

        response = client.post("/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers)

        assert response.status_code == 400

    def test_cancel_order(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)
        order = client.post(
            "/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers
        ).json()["order"]

        response = client.post(f"/orders/{order['id']}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["refund_amount"] == 10
        assert response.json()["order"]["status"] == "cancelled"
        assert Decimal(response.json()["balance"]) == Decimal("1000")

        again = client.post(f"/orders/{order['id']}/cancel", headers=headers)
        assert again.status_code == 409

    def test_retry_requires_failed_order(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)
        order = client.post(
            "/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers
        ).json()["order"]

        assert client.post(f"/orders/{order['id']}/retry", headers=headers).status_code == 409

    def test_bulk_order(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)

        response = client.post(
            "/orders/bulk",
            json={"orders": [
                {"channel_url": CHANNEL_URL, "subscribers": 500},
                {"channel_url": CHANNEL_URL, "subscribers": 1_000},
            ]},
            headers=headers,
        )

        assert response.status_code == 201
        assert response.json()["total_price"] == 30
        assert len(response.json()["orders"]) == 2
        assert client.get("/orders/stats", headers=headers).json()["total_orders"] == 2

    def test_order_not_found(self, client):
        headers = register(client)

        assert client.get(f"/orders/{uuid4()}", headers=headers).status_code == 404
        assert client.post(f"/orders/{uuid4()}/cancel", headers=headers).status_code == 404

    def test_orders_are_private(self, client):
        owner = register(client)
        fund(client, owner, 1000)
        verify(client, owner)
        order = client.post(
            "/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=owner
        ).json()["order"]
        other = register(client, "other@example.com")

        assert client.get(f"/orders/{order['id']}", headers=other).status_code == 404


class TestDashboard:
    """Per-user dashboard, analytics and referral stats."""

    def test_referral_stats(self, client):
        referrer_headers = register(client, "referrer@example.com")
        code = client.get("/users/me", headers=referrer_headers).json()["referral_code"]
        register(client, "friend@example.com", referral_code=code)

        response = client.get("/users/me/referrals", headers=referrer_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["referral_code"] == code
        assert body["total_referrals"] == 1
        assert Decimal(body["total_earnings"]) == Decimal("50")
        assert body["recent_referrals"][0]["email"] == "friend@example.com"

    def test_dashboard(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)
        client.post("/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers)

        response = client.get("/users/me/dashboard", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["stats"]["total_orders"] == 1
        assert body["channels"]["total_channels"] == 1
        assert len(body["recent_orders"]) == 1
        assert len(body["recent_transactions"]) == 2
        assert Decimal(body["user"]["balance"]) == Decimal("990")

    def test_analytics(self, client):
        headers = register(client)
        fund(client, headers, 1000)
        verify(client, headers)
        client.post("/orders", json={"channel_url": CHANNEL_URL, "subscribers": 500}, headers=headers)

        response = client.get("/users/me/analytics", params={"period": "7d"}, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["period"] == "7d"
        assert body["order_analytics"][0]["orders"] == 1
        assert body["channel_performance"][0]["order_count"] == 1
        assert body["payment_distribution"][0]["count"] == 1

    def test_analytics_rejects_unknown_period(self, client):
        headers = register(client)

        response = client.get("/users/me/analytics", params={"period": "2w"}, headers=headers)

        assert response.status_code == 422

    def test_dashboard_requires_user(self, client):
        assert client.get("/users/me/dashboard").status_code == 401


class TestEventStream:

    def test_unknown_user_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/events/{uuid4()}"):
                pass

        assert exc.value.code == 4401


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
