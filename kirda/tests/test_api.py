"""
Tests for the HTTP API

The ledger is a fresh in-memory service per test and Cashfree is replaced by
a fake gateway through FastAPI dependency overrides.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from werkzeug.security import generate_password_hash

from kirda import api
from kirda.cashfree import PaymentGatewayError, PaymentOrder, PaymentStatus, PayoutTransfer
from kirda.service import LedgerService


class FakeGateway:
    def __init__(self):
        self.orders: dict[str, PaymentStatus] = {}
        self.signature_valid = True
        self.payout_error = None
        self.payout_delay = 0.0
        self.transfers = []

    def create_order(self, user_id, amount, customer_name, customer_email=None, customer_phone=None):
        order_id = f"KIRDA_{user_id}_{1700000000000 + len(self.orders)}"
        self.orders[order_id] = PaymentStatus(order_id=order_id, status="ACTIVE", amount=amount)
        return PaymentOrder(order_id=order_id, payment_session_id="session_" + order_id, amount=amount, currency="INR")

    def mark_paid(self, order_id):
        self.orders[order_id] = self.orders[order_id].model_copy(update={"status": "PAID"})

    def verify_payment(self, order_id):
        return self.orders[order_id]

    def get_order_payments(self, order_id):
        return [{"cf_payment_id": 1, "payment_status": "SUCCESS", "payment_group": "upi"}]

    def verify_webhook_signature(self, raw_body, timestamp, signature):
        return self.signature_valid

    def add_beneficiary(self, user_id, name, bank_account, ifsc):
        return f"BENE_{user_id}_{bank_account[-4:]}"

    def request_withdrawal(self, user_id, amount, bene_id, remarks):
        time.sleep(self.payout_delay)
        if self.payout_error:
            raise self.payout_error
        transfer = PayoutTransfer(transfer_id=f"WTH_{user_id}_{len(self.transfers)}", status="PENDING")
        self.transfers.append(transfer)
        return transfer

    def get_withdrawal_status(self, transfer_id):
        return {"transferId": transfer_id, "status": "SUCCESS"}


@pytest.fixture
def ledger():
    return LedgerService()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(ledger, gateway):
    api.app.dependency_overrides[api.get_ledger_service] = lambda: ledger
    api.app.dependency_overrides[api.get_payment_gateway] = lambda: gateway
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client):
    api.app.dependency_overrides[api.require_admin] = lambda: "admin"
    return client


def register(client, username, referral_code=None):
    response = client.post("/api/auth/register", json={
        "username": username, "password": "secret", "referral_code": referral_code,
    })
    assert response.status_code == 200, response.text
    return response.json()["user"]


class TestAuth:
    def test_register_and_login(self, client):
        user = register(client, "alpha")

        assert user["deposit_wallet"] == "0.00"
        assert "password_hash" not in user

        response = client.post("/api/auth/login", json={"username": "alpha", "password": "secret"})
        assert response.status_code == 200
        assert response.json()["user"]["id"] == user["id"]

    def test_login_rejects_bad_password(self, client):
        register(client, "alpha")

        response = client.post("/api/auth/login", json={"username": "alpha", "password": "nope"})
        assert response.status_code == 401

    def test_duplicate_username(self, client):
        register(client, "alpha")

        response = client.post("/api/auth/register", json={"username": "alpha", "password": "x"})
        assert response.status_code == 409

    def test_invalid_referral_code(self, client):
        response = client.post("/api/auth/register", json={
            "username": "alpha", "password": "x", "referral_code": "KIRDAZZZZZ",
        })
        assert response.status_code == 400

    def test_unknown_user(self, client):
        assert client.get("/api/user/999").status_code == 404


class TestPayments:
    def test_create_order_enforces_minimum(self, client):
        user = register(client, "alpha")

        response = client.post("/api/payment/create-order", json={"user_id": user["id"], "amount": "19.99"})
        assert response.status_code == 400
        assert "Minimum deposit" in response.json()["detail"]

    def test_create_order(self, client):
        user = register(client, "alpha")

        response = client.post("/api/payment/create-order", json={"user_id": user["id"], "amount": 20})
        assert response.status_code == 200
        body = response.json()
        assert body["order_id"].startswith(f"KIRDA_{user['id']}_")
        assert body["amount"] == "20.00"

    def test_verify_unpaid_order(self, client, ledger):
        user = register(client, "alpha")
        order_id = client.post("/api/payment/create-order", json={"user_id": user["id"], "amount": 100}).json()["order_id"]

        response = client.post("/api/payment/verify", json={"order_id": order_id})
        assert response.status_code == 400
        assert response.json()["detail"]["status"] == "ACTIVE"
        assert ledger.get_user(user["id"]).deposit_wallet == Decimal("0.00")

    def test_verify_then_webhook_credits_once(self, client, ledger, gateway):
        referrer = register(client, "referrer")
        user = register(client, "alpha", referral_code=referrer["referral_code"])
        order_id = client.post("/api/payment/create-order", json={"user_id": user["id"], "amount": 100}).json()["order_id"]
        gateway.mark_paid(order_id)

        verified = client.post("/api/payment/verify", json={"order_id": order_id})
        assert verified.status_code == 200
        assert verified.json()["new_balance"] == "100.00"
        assert verified.json()["already_processed"] is False

        webhook = client.post("/api/payment/webhook", json={
            "order_id": order_id, "order_status": "PAID", "order_amount": 100,
        })
        assert webhook.status_code == 200

        again = client.post("/api/payment/verify", json={"order_id": order_id})
        assert again.json()["already_processed"] is True

        assert ledger.get_user(user["id"]).deposit_wallet == Decimal("100.00")
        assert ledger.get_user(referrer["id"]).referral_wallet == Decimal("7.00")
        history = client.get(f"/api/transactions/{user['id']}").json()
        assert history["total_count"] == 1

    def test_nested_webhook_payload(self, client, ledger):
        user = register(client, "alpha")
        order_id = f"KIRDA_{user['id']}_1700000000123"

        response = client.post("/api/payment/webhook", json={
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": order_id, "order_amount": 250.5},
                "payment": {"payment_status": "SUCCESS"},
            },
        })

        assert response.status_code == 200
        assert ledger.get_user(user["id"]).deposit_wallet == Decimal("250.50")

    def test_webhook_rejects_bad_signature(self, client, ledger, gateway, monkeypatch):
        monkeypatch.setattr(api.config, "CASHFREE_VERIFY_WEBHOOKS", True)
        gateway.signature_valid = False
        user = register(client, "alpha")

        response = client.post("/api/payment/webhook", json={
            "order_id": f"KIRDA_{user['id']}_1", "order_status": "PAID", "order_amount": 100,
        })

        assert response.status_code == 401
        assert ledger.get_user(user["id"]).deposit_wallet == Decimal("0.00")

    def test_webhook_for_unknown_user_is_acknowledged(self, client, ledger):
        response = client.post("/api/payment/webhook", json={
            "order_id": "KIRDA_999_1", "order_status": "PAID", "order_amount": 100,
        })

        assert response.status_code == 200
        assert ledger.storage.transactions == {}

    @pytest.mark.parametrize("order_id, amount", [
        ("ORDER-FROM-ELSEWHERE", 100),
        ("KIRDA_1_1700000000000", 100.005),
    ])
    def test_webhook_rejected_by_ledger_is_acknowledged(self, client, ledger, order_id, amount):
        register(client, "alpha")

        response = client.post("/api/payment/webhook", json={
            "order_id": order_id, "order_status": "PAID", "order_amount": amount,
        })

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert ledger.storage.transactions == {}

    def test_direct_deposit_disabled_by_default(self, client, monkeypatch):
        monkeypatch.setattr(api.config, "DIRECT_DEPOSITS_ENABLED", False)
        user = register(client, "alpha")

        response = client.post("/api/wallet/deposit", json={"user_id": user["id"], "amount": 50})
        assert response.status_code == 403

    def test_direct_deposit_when_enabled(self, client, monkeypatch):
        monkeypatch.setattr(api.config, "DIRECT_DEPOSITS_ENABLED", True)
        user = register(client, "alpha")

        response = client.post("/api/wallet/deposit", json={"user_id": user["id"], "amount": 50})
        assert response.status_code == 200
        assert response.json()["new_balance"] == "50.00"


class TestWithdrawals:
    def _fund(self, ledger, user_id, amount):
        ledger.storage.users[user_id]["withdrawal_wallet"] = Decimal(amount)

    def test_withdraw(self, client, ledger, gateway):
        user = register(client, "alpha")
        self._fund(ledger, user["id"], "300.00")

        response = client.post("/api/wallet/withdraw", json={
            "user_id": user["id"], "amount": 120, "bank_account": "001122334455", "ifsc": "HDFC0000001",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["new_balance"] == "180.00"
        assert body["transfer_id"] == gateway.transfers[0].transfer_id
        assert body["transaction"]["amount"] == "-120.00"

    def test_withdraw_insufficient_balance_skips_gateway(self, client, ledger, gateway):
        user = register(client, "alpha")
        self._fund(ledger, user["id"], "50.00")

        response = client.post("/api/wallet/withdraw", json={
            "user_id": user["id"], "amount": 120, "bank_account": "001122334455", "ifsc": "HDFC0000001",
        })

        assert response.status_code == 400
        assert gateway.transfers == []

    def test_withdraw_below_minimum(self, client, ledger):
        user = register(client, "alpha")
        self._fund(ledger, user["id"], "300.00")

        response = client.post("/api/wallet/withdraw", json={
            "user_id": user["id"], "amount": 99, "bank_account": "001122334455", "ifsc": "HDFC0000001",
        })
        assert response.status_code == 400

    def test_gateway_failure_surfaces_and_keeps_balance(self, client, ledger, gateway):
        user = register(client, "alpha")
        self._fund(ledger, user["id"], "300.00")
        gateway.payout_error = PaymentGatewayError("Cashfree payout error: Invalid IFSC", status_code=422)

        response = client.post("/api/wallet/withdraw", json={
            "user_id": user["id"], "amount": 120, "bank_account": "001122334455", "ifsc": "BAD",
        })

        assert response.status_code == 502
        assert response.json() == {"detail": "Cashfree payout error: Invalid IFSC", "upstream_status": 422}
        assert ledger.get_user(user["id"]).withdrawal_wallet == Decimal("300.00")

    def test_concurrent_withdrawals_pay_out_once(self, client, ledger, gateway):
        user = register(client, "alpha")
        self._fund(ledger, user["id"], "150.00")
        gateway.payout_delay = 0.2

        def withdraw(_):
            return client.post("/api/wallet/withdraw", json={
                "user_id": user["id"], "amount": 150, "bank_account": "001122334455", "ifsc": "HDFC0000001",
            }).status_code

        with ThreadPoolExecutor(max_workers=2) as pool:
            codes = sorted(pool.map(withdraw, range(2)))

        assert codes == [200, 400]
        assert len(gateway.transfers) == 1
        assert ledger.get_user(user["id"]).withdrawal_wallet == Decimal("0.00")
        withdrawals = [t for t in ledger.storage.transactions.values() if t["type"] == "withdrawal"]
        assert [t["reference_id"] for t in withdrawals] == [gateway.transfers[0].transfer_id]

    def test_withdraw_unknown_user(self, client, ledger, gateway):
        response = client.post("/api/wallet/withdraw", json={
            "user_id": 999, "amount": 150, "bank_account": "001122334455", "ifsc": "HDFC0000001",
        })

        assert response.status_code == 404
        assert gateway.transfers == []
        assert ledger.storage._user_locks == {}

    def test_withdrawal_status(self, client):
        response = client.get("/api/withdrawal/status/WTH_1_0")
        assert response.json()["status"]["status"] == "SUCCESS"


class TestTournaments:
    def test_list_games_and_tournaments(self, client):
        games = client.get("/api/games").json()
        assert [g["name"] for g in games] == ["freefire", "bgmi", "codm"]

        tournaments = client.get("/api/tournaments", params={"game_id": 2}).json()
        assert len(tournaments) == 1
        assert tournaments[0]["game"]["display_name"] == "BGMI"

    def test_join(self, client, ledger):
        user = register(client, "alpha")
        ledger.storage.users[user["id"]]["deposit_wallet"] = Decimal("30.00")
        ledger.storage.users[user["id"]]["referral_wallet"] = Decimal("50.00")

        # Seeded "Solo Victory" costs 30.00
        response = client.post("/api/tournaments/join", json={"tournament_id": 2, "user_id": user["id"]})

        assert response.status_code == 200
        body = response.json()
        assert body["deposit_wallet"] == "0.00"
        assert body["referral_wallet"] == "50.00"
        assert body["entry"]["entry_fee"] == "30.00"

    def test_join_full_tournament(self, client, ledger):
        user = register(client, "alpha")
        ledger.storage.users[user["id"]]["deposit_wallet"] = Decimal("100.00")
        ledger.storage.tournaments[1]["current_players"] = ledger.storage.tournaments[1]["max_players"]

        response = client.post("/api/tournaments/join", json={"tournament_id": 1, "user_id": user["id"]})

        assert response.status_code == 409
        assert ledger.storage.tournaments[1]["current_players"] == 100

    def test_join_insufficient_balance(self, client):
        user = register(client, "alpha")

        response = client.post("/api/tournaments/join", json={"tournament_id": 1, "user_id": user["id"]})
        assert response.status_code == 400

    def test_join_unknown_tournament(self, client):
        user = register(client, "alpha")

        response = client.post("/api/tournaments/join", json={"tournament_id": 42, "user_id": user["id"]})
        assert response.status_code == 404

    def test_unknown_ids_keep_no_locks(self, client, ledger):
        for unknown in range(1000, 1200):
            response = client.post("/api/tournaments/join", json={"tournament_id": unknown, "user_id": unknown})
            assert response.status_code == 404

        assert ledger.storage._user_locks == {}
        assert ledger.storage._tournament_locks == {}

    def test_get_game(self, client):
        response = client.get("/api/games/2")

        assert response.status_code == 200
        assert response.json()["display_name"] == "BGMI"
        assert client.get("/api/games/99").status_code == 404

    def test_user_entries(self, client, ledger):
        user = register(client, "alpha")
        ledger.storage.users[user["id"]]["deposit_wallet"] = Decimal("100.00")
        client.post("/api/tournaments/join", json={"tournament_id": 1, "user_id": user["id"]})
        client.post("/api/tournaments/join", json={"tournament_id": 2, "user_id": user["id"]})

        entries = client.get(f"/api/user/{user['id']}/entries").json()

        assert [e["tournament_id"] for e in entries] == [1, 2]
        assert client.get("/api/user/999/entries").status_code == 404


class TestHistory:
    def test_full_history_by_default(self, client, ledger):
        user = register(client, "alpha")
        for i in range(60):
            ledger.credit_deposit(user["id"], Decimal("1.00"), reference_id=f"DEP_{i}")

        body = client.get(f"/api/transactions/{user['id']}").json()

        assert body["total_count"] == 60
        assert len(body["transactions"]) == 60

    def test_pagination(self, client, ledger):
        user = register(client, "alpha")
        for i in range(5):
            ledger.credit_deposit(user["id"], Decimal("1.00"), reference_id=f"DEP_{i}")

        body = client.get(f"/api/transactions/{user['id']}", params={"limit": 2, "offset": 1}).json()

        assert body["total_count"] == 5
        assert [t["reference_id"] for t in body["transactions"]] == ["DEP_3", "DEP_2"]


class TestSupport:
    def test_help_request_and_messages(self, admin_client):
        user = register(admin_client, "alpha")

        ticket = admin_client.post("/api/help", json={"user_id": user["id"], "subject": "Refund", "message": "Match cancelled"})
        assert ticket.status_code == 200
        assert ticket.json()["status"] == "open"

        resolved = admin_client.put(f"/api/admin/help-requests/{ticket.json()['id']}", json={
            "status": "resolved", "admin_response": "Refund issued",
        })
        assert resolved.json()["status"] == "resolved"

        created = admin_client.post("/api/admin/messages", json={"title": "Maintenance", "message": "Back at 6"})
        assert created.status_code == 201
        assert [m["title"] for m in admin_client.get("/api/messages").json()] == ["Maintenance"]


class TestAdmin:
    def test_admin_requires_credentials(self, client):
        assert client.get("/api/admin/users").status_code == 401

    def test_admin_basic_auth(self, client, monkeypatch):
        monkeypatch.setattr(api.config, "ADMIN_USERNAME", "root")
        monkeypatch.setattr(api.config, "ADMIN_PASSWORD_HASH", generate_password_hash("s3cret"))
        register(client, "alpha")

        assert client.get("/api/admin/users", auth=("root", "wrong")).status_code == 401

        response = client.get("/api/admin/users", auth=("root", "s3cret"))
        assert response.status_code == 200
        assert [u["username"] for u in response.json()] == ["alpha"]

    def test_create_tournament(self, admin_client):
        response = admin_client.post("/api/admin/tournaments", json={
            "game_id": 3, "name": "Night Ops", "entry_fee": "25", "prize_pool": "2000",
            "max_players": 20, "start_time": "2030-01-01T18:00:00Z",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "upcoming"
        assert body["current_players"] == 0
        assert body["entry_fee"] == "25.00"

    def test_create_tournament_unknown_game(self, admin_client):
        response = admin_client.post("/api/admin/tournaments", json={
            "game_id": 99, "name": "Ghost Cup", "entry_fee": "25", "prize_pool": "2000",
            "max_players": 20, "start_time": "2030-01-01T18:00:00Z",
        })
        assert response.status_code == 404

    def test_admin_transactions(self, admin_client, ledger):
        user = register(admin_client, "alpha")
        ledger.credit_deposit(user["id"], Decimal("10.00"), reference_id="A")
        ledger.credit_deposit(user["id"], Decimal("20.00"), reference_id="B")

        transactions = admin_client.get("/api/admin/transactions").json()
        assert [t["reference_id"] for t in transactions] == ["B", "A"]

    def test_order_payments(self, admin_client):
        response = admin_client.get("/api/admin/payments/KIRDA_1_1700000000000")

        assert response.status_code == 200
        body = response.json()
        assert body["order_id"] == "KIRDA_1_1700000000000"
        assert body["payments"][0]["payment_group"] == "upi"
