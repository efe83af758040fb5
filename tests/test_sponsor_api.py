# tests/test_sponsor_api.py
"""
Tests for the sponsorship and vault endpoints.
"""
import base64

from requests.exceptions import ConnectionError
from solders.keypair import Keypair
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from ledger_fakes import new_address

API = "/api/v1"


def _transfer_json(user, lamports=1_000):
    ix = transfer(TransferParams(from_pubkey=user.pubkey(), to_pubkey=Keypair().pubkey(), lamports=lamports))
    return {
        "programId": str(ix.program_id),
        "keys": [
            {"pubkey": str(meta.pubkey), "isSigner": meta.is_signer, "isWritable": meta.is_writable}
            for meta in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode("ascii"),
    }


def _sign(transaction_b64, user):
    tx = Transaction.from_bytes(base64.b64decode(transaction_b64))
    tx.partial_sign([user], tx.message.recent_blockhash)
    return base64.b64encode(bytes(tx)).decode("ascii")


class TestEligibilityEndpoint:
    """Test /sponsor/check-eligibility."""

    def test_new_wallet_eligible(self, client):
        address = new_address()
        response = client.get(f"{API}/sponsor/check-eligibility/{address}")
        assert response.status_code == 200
        body = response.json()
        assert body["walletAddress"] == address
        assert body["eligible"] is True
        assert body["status"] == "eligible"
        assert body["sponsorshipAmount"] == 10_000_000
        assert body["suspicious"] is False

    def test_post_also_supported(self, client):
        assert client.post(f"{API}/sponsor/check-eligibility/{new_address()}").status_code == 200

    def test_funded_wallet(self, client, ledger):
        address = new_address()
        ledger.balances[address] = 1_000_000
        body = client.get(f"{API}/sponsor/check-eligibility/{address}").json()
        assert body["eligible"] is False
        assert body["reason"] == "wallet already has balance"

    def test_ledger_down_is_ineligible(self, client, ledger):
        ledger.error = ConnectionError("down")
        body = client.get(f"{API}/sponsor/check-eligibility/{new_address()}").json()
        assert body["eligible"] is False
        assert body["reason"].startswith("eligibility check failed")

    def test_invalid_address(self, client):
        assert client.get(f"{API}/sponsor/check-eligibility/not-a-wallet").status_code == 400

    def test_suspicious_reported_not_blocking(self, client, store):
        """Shared-IP flags show up without changing eligibility."""
        for i in range(4):
            store.create("sponsorships", f"wallet{i}", {"wallet_address": f"wallet{i}", "client_ip": "10.9.9.9"})
        response = client.get(
            f"{API}/sponsor/check-eligibility/{new_address()}",
            headers={"X-Forwarded-For": "10.9.9.9"},
        )
        body = response.json()
        assert body["eligible"] is True
        assert body["suspicious"] is True
        assert "Multiple wallets from same IP" in body["suspiciousPatterns"]

    def test_sponsor_rate_limit(self, client):
        """Sponsorship endpoints allow five requests per hour per IP."""
        for _ in range(5):
            assert client.get(f"{API}/sponsor/check-eligibility/{new_address()}").status_code == 200
        response = client.get(f"{API}/sponsor/check-eligibility/{new_address()}")
        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert response.json()["retryAfter"] == int(response.headers["Retry-After"])

        other_ip = client.get(
            f"{API}/sponsor/check-eligibility/{new_address()}",
            headers={"X-Forwarded-For": "10.1.1.1"},
        )
        assert other_ip.status_code == 200


class TestSponsoredTransactionFlow:
    """Test build -> sign -> submit."""

    def test_build_sign_submit(self, client, ledger, vault, store):
        user = Keypair()
        address = str(user.pubkey())

        built = client.post(f"{API}/sponsor/build-transaction", json={
            "walletAddress": address,
            "instructions": [_transfer_json(user)],
        })
        assert built.status_code == 200, built.text
        assert built.json()["feePayer"] == vault.address

        signed = _sign(built.json()["transaction"], user)
        submitted = client.post(f"{API}/sponsor/submit", json={"walletAddress": address, "signedTransaction": signed})
        assert submitted.status_code == 200, submitted.text
        assert submitted.json()["amount"] == 10_000_000
        assert submitted.json()["confirmation"] == "confirmed"
        assert store.get("sponsorships", address)["tx_signature"] == submitted.json()["signature"]

        again = client.post(f"{API}/sponsor/submit", json={"walletAddress": address, "signedTransaction": signed})
        assert again.status_code == 403
        assert again.json()["detail"] == "already sponsored"

        eligibility = client.get(f"{API}/sponsor/check-eligibility/{address}").json()
        assert eligibility["status"] == "sponsored"

    def test_build_for_ineligible_wallet(self, client, ledger):
        user = Keypair()
        ledger.signatures[str(user.pubkey())] = [{"signature": "old"}]
        response = client.post(f"{API}/sponsor/build-transaction", json={
            "walletAddress": str(user.pubkey()),
            "instructions": [_transfer_json(user)],
        })
        assert response.status_code == 403

    def test_build_requires_instructions(self, client):
        response = client.post(f"{API}/sponsor/build-transaction", json={
            "walletAddress": new_address(),
            "instructions": [],
        })
        assert response.status_code == 422

    def test_build_ledger_down(self, client, ledger):
        user = Keypair()
        ledger.balances[str(user.pubkey())] = 0
        original = ledger.get_latest_blockhash

        def failing_blockhash():
            raise ConnectionError("down")

        ledger.get_latest_blockhash = failing_blockhash
        response = client.post(f"{API}/sponsor/build-transaction", json={
            "walletAddress": str(user.pubkey()),
            "instructions": [_transfer_json(user)],
        })
        ledger.get_latest_blockhash = original
        assert response.status_code == 503

    def test_submit_garbage(self, client):
        response = client.post(f"{API}/sponsor/submit", json={
            "walletAddress": new_address(),
            "signedTransaction": "bm90IGEgdHg=",
        })
        assert response.status_code == 400

    def test_submit_unsigned(self, client, ledger):
        user = Keypair()
        address = str(user.pubkey())
        built = client.post(f"{API}/sponsor/build-transaction", json={
            "walletAddress": address,
            "instructions": [_transfer_json(user)],
        }).json()
        response = client.post(f"{API}/sponsor/submit", json={
            "walletAddress": address,
            "signedTransaction": built["transaction"],
        })
        assert response.status_code == 403
        assert ledger.sent == []


class TestStatsEndpoints:
    """Test sponsorship stats and vault status."""

    def test_stats(self, client, store):
        store.create("sponsorships", "w1", {"wallet_address": "w1", "amount": 10, "sponsored_at": "2026-01-01T00:00:00+00:00"})
        body = client.get(f"{API}/sponsor/stats").json()
        assert body["total_sponsored"] == 1
        assert body["total_amount"] == 10

    def test_vault_status(self, client, ledger, vault):
        ledger.balances[vault.address] = 2_000_000_000
        body = client.get(f"{API}/vault/status").json()
        assert body["ok"] is True
        assert body["address"] == vault.address
        assert body["balance_sol"] == 2.0
