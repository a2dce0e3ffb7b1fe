"""Tests for the HTTP API."""

import hashlib
import hmac
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect
from httpx import ASGITransport, AsyncClient

from starbit.api.app import create_app
from starbit.api.auth import create_access_token
from starbit.api.routes.deposits import verify_webhook_signature
from starbit.ledger.database import close_db, get_db, init_db
from starbit.ledger.repository import LedgerRepository


def bearer(subject: str, role: str = None) -> dict:
    token = create_access_token(subject, role=role, username=subject)
    return {"Authorization": f"Bearer {token}"}


ALICE = bearer("alice")
BOB = bearer("bob")
CAROL = bearer("carol")
ADMIN = bearer("root", role="admin")
ETH_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


@pytest_asyncio.fixture
async def client():
    """Client against a fresh in-memory database."""
    await init_db()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await close_db()


async def seed_balance(client: AsyncClient, subject: str, asset: str, amount: str) -> None:
    """Create the account through the API, then credit it directly."""
    response = await client.get("/api/v1/balances", headers=bearer(subject))
    assert response.status_code == 200
    async with get_db() as session:
        repo = LedgerRepository(session)
        user = await repo.get_user_by_external_id(subject)
        await repo.credit(user.id, asset, Decimal(amount))


async def balance_of(client: AsyncClient, headers: dict, asset: str) -> dict:
    response = await client.get("/api/v1/balances", headers=headers)
    for row in response.json()["data"]:
        if row["asset"] == asset:
            return row
    return {"available": "0", "locked": "0"}


async def create_btc_method(client: AsyncClient) -> int:
    response = await client.post(
        "/api/v1/admin/cryptocurrencies",
        json={"name": "Bitcoin", "symbol": "btc", "network": "bitcoin", "required_confirmations": 2},
        headers=ADMIN,
    )
    assert response.status_code == 200
    crypto_id = response.json()["data"]["id"]

    response = await client.post(
        "/api/v1/admin/payment-methods",
        json={
            "cryptocurrency_id": crypto_id,
            "wallet_address": "bc1qexampleaddress",
            "network": "bitcoin",
            "min_amount": "0.001",
            "max_amount": "10",
        },
        headers=ADMIN,
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test basic health check."""
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "starbit"

    @pytest.mark.asyncio
    async def test_detailed_health_hides_secrets(self, client):
        response = await client.get("/health/detailed")
        assert response.status_code == 200
        assert "test-secret-key" not in response.text


class TestAuthentication:
    """Tests for bearer tokens and the error envelope."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/v1/balances")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "Missing bearer token",
            "error": "unauthenticated",
        }

    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        response = await client.get(
            "/api/v1/balances", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_admin_routes_need_admin_role(self, client):
        response = await client.get("/api/v1/admin/stats", headers=ALICE)

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_new_account_has_no_balances(self, client):
        response = await client.get("/api/v1/balances", headers=ALICE)

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": []}


class TestDepositEndpoints:
    """Tests for deposit submission, webhook and admin overrides."""

    @pytest.mark.asyncio
    async def test_methods_listed(self, client):
        method_id = await create_btc_method(client)

        response = await client.get("/api/v1/deposits/methods")

        data = response.json()["data"]
        assert [m["id"] for m in data] == [method_id]
        assert data[0]["symbol"] == "BTC"
        assert data[0]["required_confirmations"] == 2

    @pytest.mark.asyncio
    async def test_submit_and_confirm_via_webhook(self, client):
        method_id = await create_btc_method(client)

        response = await client.post(
            "/api/v1/deposits",
            data={
                "crypto_payment_method_id": str(method_id),
                "amount": "0.05",
                "proof_type": "hash",
                "proof_of_payment": "0xfeed",
            },
            headers=ALICE,
        )
        assert response.status_code == 200
        deposit = response.json()["data"]
        assert deposit["status"] == "pending"

        response = await client.post(
            "/api/v1/deposits/webhook",
            json={"deposit_id": deposit["id"], "confirmations": 2, "received_amount": "0.05"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "confirmed"

        balance = await balance_of(client, ALICE, "BTC")
        assert Decimal(balance["available"]) == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_submit_with_proof_file(self, client):
        method_id = await create_btc_method(client)

        response = await client.post(
            "/api/v1/deposits",
            data={"crypto_payment_method_id": str(method_id), "amount": "0.01", "proof_type": "file"},
            files={"proof_file": ("receipt.png", b"\x89PNG fake", "image/png")},
            headers=ALICE,
        )

        assert response.status_code == 200
        assert response.json()["data"]["proof_file"].endswith(":receipt.png")

    @pytest.mark.asyncio
    async def test_submit_below_minimum(self, client):
        method_id = await create_btc_method(client)

        response = await client.post(
            "/api/v1/deposits",
            data={
                "crypto_payment_method_id": str(method_id),
                "amount": "0.0001",
                "proof_type": "hash",
                "proof_of_payment": "0x01",
            },
            headers=ALICE,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_deactivated_method_rejected(self, client):
        method_id = await create_btc_method(client)
        response = await client.patch(
            f"/api/v1/admin/payment-methods/{method_id}", json={"is_active": False}, headers=ADMIN
        )
        assert response.status_code == 200

        response = await client.post(
            "/api/v1/deposits",
            data={
                "crypto_payment_method_id": str(method_id),
                "amount": "0.05",
                "proof_type": "hash",
                "proof_of_payment": "0x02",
            },
            headers=ALICE,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "method_inactive"

    @pytest.mark.asyncio
    async def test_admin_manual_confirm_and_history(self, client):
        method_id = await create_btc_method(client)
        response = await client.post(
            "/api/v1/deposits",
            data={
                "crypto_payment_method_id": str(method_id),
                "amount": "0.05",
                "proof_type": "hash",
                "proof_of_payment": "0x03",
            },
            headers=ALICE,
        )
        deposit_id = response.json()["data"]["id"]

        response = await client.get(f"/api/v1/deposits/{deposit_id}", headers=BOB)
        assert response.status_code == 403

        response = await client.post(
            f"/api/v1/admin/deposits/{deposit_id}/manual-confirm",
            json={"amount": "0.049"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["data"]["verified_by"] == "admin:root"

        balance = await balance_of(client, ALICE, "BTC")
        assert Decimal(balance["available"]) == Decimal("0.049")

        response = await client.get("/api/v1/deposits", headers=ALICE)
        page = response.json()["data"]
        assert page["total"] == 1
        assert page["items"][0]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_admin_fail_needs_reason(self, client):
        method_id = await create_btc_method(client)
        response = await client.post(
            "/api/v1/deposits",
            data={
                "crypto_payment_method_id": str(method_id),
                "amount": "0.05",
                "proof_type": "hash",
                "proof_of_payment": "0x04",
            },
            headers=ALICE,
        )
        deposit_id = response.json()["data"]["id"]

        response = await client.post(
            f"/api/v1/admin/deposits/{deposit_id}/fail", json={"reason": "   "}, headers=ADMIN
        )
        assert response.status_code == 422

        response = await client.post(
            f"/api/v1/admin/deposits/{deposit_id}/fail",
            json={"reason": "Hash not found on chain"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "failed"

    def test_webhook_signature(self):
        body = b'{"deposit_id": 1, "confirmations": 2}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(body, f"sha256={signature}", "secret")
        assert verify_webhook_signature(body, signature, "secret")
        assert not verify_webhook_signature(body, "sha256=deadbeef", "secret")
        assert not verify_webhook_signature(body, None, "secret")
        assert verify_webhook_signature(body, None, "")


class TestWithdrawalEndpoints:
    """Tests for withdrawal requests and admin processing."""

    @pytest.mark.asyncio
    async def test_fee_preview(self, client):
        response = await client.post("/api/v1/withdrawals/fee", json={"amount": "100"}, headers=ALICE)

        assert response.status_code == 200
        quote = response.json()["data"]
        assert quote["asset"] == "USD"
        assert Decimal(quote["net_amount"]) == Decimal("100")
        assert quote["processing_time"]

    @pytest.mark.asyncio
    async def test_request_then_cancel(self, client):
        await seed_balance(client, "alice", "USD", "500")

        response = await client.post(
            "/api/v1/withdrawals",
            json={
                "amount": "500",
                "method": "crypto",
                "wallet_address": ETH_ADDRESS,
                "network": "ethereum",
            },
            headers=ALICE,
        )
        assert response.status_code == 200
        withdrawal = response.json()["data"]
        assert withdrawal["reference"] == f"W-{withdrawal['id']:06d}"

        balance = await balance_of(client, ALICE, "USD")
        assert Decimal(balance["available"]) == Decimal("0")
        assert Decimal(balance["locked"]) == Decimal("500")

        response = await client.post(
            f"/api/v1/admin/withdrawals/{withdrawal['id']}/cancel",
            json={"reason": "User request"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

        balance = await balance_of(client, ALICE, "USD")
        assert Decimal(balance["available"]) == Decimal("500")
        assert Decimal(balance["locked"]) == Decimal("0")

        response = await client.post(
            f"/api/v1/admin/withdrawals/{withdrawal['id']}/process", headers=ADMIN
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    @pytest.mark.asyncio
    async def test_request_then_process(self, client):
        await seed_balance(client, "alice", "USD", "500")
        response = await client.post(
            "/api/v1/withdrawals",
            json={"amount": "500", "method": "bank_transfer", "details": "IBAN DE00"},
            headers=ALICE,
        )
        withdrawal_id = response.json()["data"]["id"]

        response = await client.post(
            f"/api/v1/admin/withdrawals/{withdrawal_id}/process",
            json={"tx_hash": "wire-123"},
            headers=ADMIN,
        )
        assert response.status_code == 200

        balance = await balance_of(client, ALICE, "USD")
        assert Decimal(balance["available"]) == Decimal("0")
        assert Decimal(balance["locked"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_malformed_wallet_address(self, client):
        await seed_balance(client, "alice", "USD", "500")

        response = await client.post(
            "/api/v1/withdrawals",
            json={"amount": "100", "method": "crypto", "wallet_address": "0xdest"},
            headers=ALICE,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"
        balance = await balance_of(client, ALICE, "USD")
        assert Decimal(balance["locked"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, client):
        response = await client.post(
            "/api/v1/withdrawals",
            json={"amount": "100", "method": "crypto", "wallet_address": ETH_ADDRESS},
            headers=ALICE,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "insufficient_balance"

        response = await client.get("/api/v1/withdrawals", headers=ALICE)
        assert response.json()["data"]["total"] == 0


class TestP2PEndpoints:
    """Tests for offers, trades and chat over HTTP."""

    async def open_trade(self, client) -> dict:
        await seed_balance(client, "alice", "BTC", "0.01")
        response = await client.post(
            "/api/v1/p2p/offers",
            json={
                "side": "sell",
                "coin": "BTC",
                "price": "50000",
                "available_amount": "0.01",
                "min_limit": "10",
                "max_limit": "1000",
                "payment_methods": ["Bank Transfer"],
            },
            headers=ALICE,
        )
        assert response.status_code == 200
        offer_id = response.json()["data"]["id"]

        response = await client.post(
            f"/api/v1/p2p/offers/{offer_id}/trade", json={"amount_usd": "100"}, headers=BOB
        )
        assert response.status_code == 200
        return response.json()["data"]["trade"]

    @pytest.mark.asyncio
    async def test_full_trade(self, client):
        trade = await self.open_trade(client)
        assert Decimal(trade["crypto_amount"]) == Decimal("0.002")

        response = await client.post(
            f"/api/v1/p2p/trades/{trade['id']}/pay", json={"version": trade["version"]}, headers=BOB
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "paid"

        response = await client.post(f"/api/v1/p2p/trades/{trade['id']}/release", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"

        buyer = await balance_of(client, BOB, "BTC")
        seller = await balance_of(client, ALICE, "BTC")
        assert Decimal(buyer["available"]) == Decimal("0.002")
        assert Decimal(seller["available"]) == Decimal("0.008")
        assert Decimal(seller["locked"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_stale_version_conflict(self, client):
        trade = await self.open_trade(client)
        await client.post(f"/api/v1/p2p/trades/{trade['id']}/pay", headers=BOB)

        response = await client.post(
            f"/api/v1/p2p/trades/{trade['id']}/dispute",
            json={"version": trade["version"]},
            headers=ALICE,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_wrong_actor(self, client):
        trade = await self.open_trade(client)

        response = await client.post(f"/api/v1/p2p/trades/{trade['id']}/pay", headers=ALICE)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_dispute_and_admin_refund(self, client):
        trade = await self.open_trade(client)

        response = await client.post(
            f"/api/v1/p2p/trades/{trade['id']}/dispute", json={"reason": "No reply"}, headers=BOB
        )
        assert response.json()["data"]["status"] == "disputed"

        response = await client.get("/api/v1/admin/stats", headers=ADMIN)
        assert response.json()["data"]["disputed_trades"] == 1

        response = await client.post(
            f"/api/v1/admin/p2p/trades/{trade['id']}/resolve",
            json={"outcome": "refund"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

        seller = await balance_of(client, ALICE, "BTC")
        assert Decimal(seller["available"]) == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_chat_history(self, client):
        trade = await self.open_trade(client)

        for headers, text in ((BOB, "Paid via bank"), (ALICE, "Got it")):
            response = await client.post(
                f"/api/v1/p2p/trades/{trade['id']}/messages", json={"message": text}, headers=headers
            )
            assert response.status_code == 200

        response = await client.get(f"/api/v1/p2p/trades/{trade['id']}", headers=BOB)
        detail = response.json()["data"]
        assert [m["body"] for m in detail["messages"]] == ["Paid via bank", "Got it"]
        assert detail["poll_interval"] > 0

        response = await client.get(f"/api/v1/p2p/trades/{trade['id']}", headers=CAROL)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_offer_search(self, client):
        await self.open_trade(client)

        response = await client.get("/api/v1/p2p/offers", params={"search": "alice"})

        offers = response.json()["data"]
        assert len(offers) == 1
        assert offers[0]["username"] == "alice"
        assert offers[0]["payment_methods"] == ["Bank Transfer"]
        assert Decimal(offers[0]["available_amount"]) == Decimal("0.008")


class TestTradeChannelSocket:
    """Refused sockets are accepted first so the close code reaches the client."""

    def refusal_code(self, path: str) -> int:
        with TestClient(create_app()) as client:
            with client.websocket_connect(path) as websocket:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    websocket.receive_json()
        return exc_info.value.code

    def test_bad_token(self):
        assert self.refusal_code("/ws/p2p.trade.1?token=not-a-jwt") == 4401

    def test_missing_token(self):
        assert self.refusal_code("/ws/p2p.trade.1") == 4401

    def test_unknown_trade(self):
        token = create_access_token("alice", username="alice")
        assert self.refusal_code(f"/ws/p2p.trade.999?token={token}") == 4404
