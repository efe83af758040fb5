# tests/test_payments_api.py
"""
Tests for fee, payment link and x402 instruction endpoints.
"""
import pytest

from ledger_fakes import new_address

API = "/api/v1"


def _auth(creator):
    return {"Authorization": f"Bearer {creator['apiKey']}"}


@pytest.fixture
def creator(client):
    return client.post(f"{API}/creators", json={"walletAddress": new_address(), "username": "alice"}).json()


@pytest.fixture
def content(client, creator):
    return client.post(f"{API}/content", headers=_auth(creator), json={
        "creatorId": creator["id"],
        "title": "Episode 1",
        "price": 2_000_000,
        "assetType": "USDC",
        "pointer": "ipfs://bafy-example",
    }).json()


class TestFees:
    """Test fee display endpoints."""

    def test_fee_info(self, client):
        response = client.get(f"{API}/fees")
        assert response.status_code == 200
        body = response.json()
        assert body["platformFeePercentage"] == 0.75
        assert body["creatorKeepsPercentage"] == 99.25

    def test_calculate(self, client):
        """The split of 1 SOL is 0.0075 / 0.9925."""
        response = client.get(f"{API}/fees/calculate", params={"amount": 1_000_000_000, "assetType": "sol"})
        assert response.status_code == 200
        body = response.json()
        assert body["platformFee"] == 7_500_000
        assert body["creatorAmount"] == 992_500_000
        assert body["platformFee"] + body["creatorAmount"] == body["totalAmount"]
        assert body["assetType"] == "SOL"
        assert body["displayAmount"] == "1"

    def test_calculate_unknown_asset(self, client):
        response = client.get(f"{API}/fees/calculate", params={"amount": 100, "assetType": "BTC"})
        assert response.status_code == 400

    def test_calculate_negative(self, client):
        response = client.get(f"{API}/fees/calculate", params={"amount": -1})
        assert response.status_code == 422


class TestPaymentLinks:
    """Test payment intents created ahead of unlock."""

    def test_create_and_get(self, client, content, vault):
        """A payment link carries the descriptor and is retrievable."""
        buyer = new_address()
        response = client.post(f"{API}/payment-links", json={"contentId": content["id"], "buyer": buyer})
        assert response.status_code == 201
        link = response.json()
        assert link["status"] == "pending"
        assert link["amount"] == 2_000_000
        assert link["assetType"] == "USDC"
        assert link["platformFee"] + link["creatorAmount"] == 2_000_000
        assert link["x402"]["paymentId"] == link["paymentId"]
        assert link["x402"]["platformFeeAddress"] == vault.address

        fetched = client.get(f"{API}/payment-links/{link['paymentId']}")
        assert fetched.status_code == 200
        assert fetched.json()["buyer"] == buyer
        assert fetched.json()["x402"] is None

    def test_expired_link(self, client, content, store):
        """Links past expiry report expired."""
        link = client.post(f"{API}/payment-links", json={"contentId": content["id"], "buyer": new_address()}).json()
        store.update("payment_intents", link["paymentId"], {"expires_at": 0})
        assert client.get(f"{API}/payment-links/{link['paymentId']}").json()["status"] == "expired"

    def test_unknown_content(self, client):
        response = client.post(f"{API}/payment-links", json={"contentId": "content_missing", "buyer": new_address()})
        assert response.status_code == 404

    def test_invalid_buyer(self, client, content):
        response = client.post(f"{API}/payment-links", json={"contentId": content["id"], "buyer": "nope"})
        assert response.status_code == 400

    def test_unknown_link(self, client):
        assert client.get(f"{API}/payment-links/missing").status_code == 404


class TestPaymentInstructions:
    """Test the x402 discovery listing."""

    def test_list(self, client, content):
        response = client.get(f"{API}/x402/payment-instructions")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["next_offset"] is None
        requirement = body["payment_instructions"][0]["payment_requirements"][0]
        assert requirement["max_amount_required"] == "2000000"
        assert requirement["asset"] == "USDC"

    def test_pagination(self, client, creator, content):
        client.post(f"{API}/content", headers=_auth(creator), json={
            "creatorId": creator["id"], "title": "Episode 2", "price": 1, "pointer": "ipfs://two",
        })
        body = client.get(f"{API}/x402/payment-instructions", params={"limit": 1}).json()
        assert body["total"] == 2
        assert len(body["payment_instructions"]) == 1
        assert body["next_offset"] == 1

    def test_get_one(self, client, content):
        response = client.get(f"{API}/x402/payment-instructions/{content['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Episode 1"

    def test_get_missing(self, client):
        assert client.get(f"{API}/x402/payment-instructions/content_missing").status_code == 404


class TestRateLimiting:
    """Test the general API ceiling."""

    def test_general_limit(self, client):
        """The 101st request in a minute is rejected with 429 and headers."""
        for _ in range(100):
            assert client.get(f"{API}/fees").status_code == 200
        response = client.get(f"{API}/fees")
        assert response.status_code == 429
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0
        body = response.json()
        assert body["retryAfter"] == int(response.headers["Retry-After"])
        assert body["detail"] == f"Rate limit exceeded. Try again in {body['retryAfter']} seconds."

    def test_api_key_has_own_quota(self, client, creator):
        """Requests with a valid API key are counted per key, not per IP."""
        for _ in range(100):
            assert client.get(f"{API}/fees", headers=_auth(creator)).status_code == 200
        limited = client.get(f"{API}/fees", headers=_auth(creator))
        assert limited.status_code == 429
        assert limited.json()["retryAfter"] > 0

        assert client.get(f"{API}/fees").status_code == 200

    def test_unknown_key_counts_against_ip(self, client):
        """A made-up key does not open a fresh quota."""
        for n in range(100):
            headers = {"Authorization": f"Bearer {n:064x}"}
            assert client.get(f"{API}/fees", headers=headers).status_code == 200
        assert client.get(f"{API}/fees").status_code == 429

    def test_health_not_limited(self, client):
        """The health check is outside the API routers."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
