# tests/conftest.py
"""
Shared fixtures.

Settings are read when app.core.config is imported, so the required
secrets are placed in the environment here, before any app module loads.
"""
import base64
import os
import tempfile

import pytest
from solders.keypair import Keypair

_VAULT_KEYPAIR = Keypair()
_AUDIT_DIR = tempfile.mkdtemp(prefix="gateway-audit-")

os.environ["ACCESS_TOKEN_SECRET"] = "test-access-token-secret"
os.environ["ENCRYPTION_SECRET_KEY"] = "11" * 32
os.environ["VAULT_WALLET_PRIVATE_KEY"] = base64.b64encode(bytes(_VAULT_KEYPAIR)).decode("ascii")
os.environ["VAULT_WALLET_ADDRESS"] = str(_VAULT_KEYPAIR.pubkey())
os.environ["DATABASE_PATH"] = ""
os.environ["AUDIT_LOG_PATH"] = os.path.join(_AUDIT_DIR, "audit.jsonl")
os.environ["LEDGER_RETRY_BASE_DELAY_SECONDS"] = "0"

from app.services.store import JsonStore  # noqa: E402
from app.x402.ratelimit import reset_rate_limiter  # noqa: E402
from app.x402.vault import VaultWallet, clear_balance_cache  # noqa: E402
from ledger_fakes import FakeLedger  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_rate_limiter()
    clear_balance_cache()
    yield
    reset_rate_limiter()


@pytest.fixture
def vault_keypair():
    return _VAULT_KEYPAIR


@pytest.fixture
def vault():
    return VaultWallet(keypair=_VAULT_KEYPAIR)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    return JsonStore()


@pytest.fixture
def client(store, ledger, vault):
    from fastapi.testclient import TestClient
    from app.main import create_app

    return TestClient(create_app(store=store, ledger=ledger, vault=vault))
