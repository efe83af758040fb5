# tests/test_ledger_client.py
"""
Unit tests for the Solana JSON-RPC client.
"""
import base64
import pytest
from unittest.mock import MagicMock, patch

import requests
from requests.exceptions import ConnectionError

from app.services.ledger import LedgerRpcError, SolanaRpcClient


def _response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


def _client(*payloads):
    session = MagicMock()
    session.post.side_effect = [_response(p) for p in payloads]
    client = SolanaRpcClient(rpc_url="https://rpc.example", commitment="confirmed", timeout=5, session=session)
    return client, session


class TestSolanaRpcClient:
    """Test request shapes and error handling."""

    def test_defaults_from_settings(self):
        """URL, commitment and timeout default to settings."""
        client = SolanaRpcClient(session=MagicMock())
        assert client.rpc_url.startswith("https://api.devnet.solana.com")
        assert client.commitment == "confirmed"
        assert client.timeout == 10.0

    def test_get_transaction_request(self):
        """getTransaction asks for json encoding and v0 support."""
        client, session = _client({"jsonrpc": "2.0", "id": 1, "result": {"meta": {}}})
        assert client.get_transaction("sig1") == {"meta": {}}

        _, kwargs = session.post.call_args
        body = kwargs["json"]
        assert body["method"] == "getTransaction"
        assert body["params"][0] == "sig1"
        assert body["params"][1]["maxSupportedTransactionVersion"] == 0
        assert kwargs["timeout"] == 5

    def test_get_transaction_not_found(self):
        """A null result means not visible yet."""
        client, _ = _client({"jsonrpc": "2.0", "id": 1, "result": None})
        assert client.get_transaction("sig1") is None

    def test_request_ids_increment(self):
        """Each call uses a new JSON-RPC id."""
        client, session = _client(
            {"jsonrpc": "2.0", "id": 1, "result": 1},
            {"jsonrpc": "2.0", "id": 2, "result": 2},
        )
        client.get_balance("a")
        client.get_balance("b")
        ids = [c.kwargs["json"]["id"] for c in session.post.call_args_list]
        assert ids == [1, 2]

    def test_get_balance_context_value(self):
        """getBalance unwraps {context, value}."""
        client, _ = _client({"jsonrpc": "2.0", "id": 1, "result": {"context": {"slot": 1}, "value": 5000}})
        assert client.get_balance("addr") == 5000

    def test_rpc_error(self):
        """JSON-RPC error objects raise LedgerRpcError."""
        client, _ = _client({"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid param"}})
        with pytest.raises(LedgerRpcError) as exc_info:
            client.get_balance("addr")
        assert exc_info.value.method == "getBalance"
        assert exc_info.value.error["code"] == -32602

    def test_missing_result(self):
        """Responses without result are errors."""
        client, _ = _client({"jsonrpc": "2.0", "id": 1})
        with pytest.raises(LedgerRpcError):
            client.get_balance("addr")

    def test_http_error_propagates(self):
        """HTTP errors propagate as requests exceptions."""
        session = MagicMock()
        session.post.return_value = _response({}, status_code=503)
        client = SolanaRpcClient(rpc_url="https://rpc.example", session=session)
        with pytest.raises(requests.HTTPError):
            client.get_balance("addr")

    def test_transport_error_propagates(self):
        """Connection errors propagate unchanged."""
        session = MagicMock()
        session.post.side_effect = ConnectionError("refused")
        client = SolanaRpcClient(rpc_url="https://rpc.example", session=session)
        with pytest.raises(ConnectionError):
            client.get_transaction("sig1")

    def test_signatures_for_address(self):
        """getSignaturesForAddress passes the limit."""
        client, session = _client({"jsonrpc": "2.0", "id": 1, "result": [{"signature": "s"}]})
        assert client.get_signatures_for_address("addr", limit=1) == [{"signature": "s"}]
        assert session.post.call_args.kwargs["json"]["params"][1]["limit"] == 1

    def test_latest_blockhash(self):
        """getLatestBlockhash returns the value object."""
        value = {"blockhash": "abc", "lastValidBlockHeight": 99}
        client, _ = _client({"jsonrpc": "2.0", "id": 1, "result": {"context": {}, "value": value}})
        assert client.get_latest_blockhash() == value

    def test_send_raw_transaction(self):
        """sendTransaction sends base64 and returns the signature."""
        client, session = _client({"jsonrpc": "2.0", "id": 1, "result": "5sig" + "x" * 40})
        assert client.send_raw_transaction(b"\x01\x02") == "5sig" + "x" * 40
        params = session.post.call_args.kwargs["json"]["params"]
        assert params[0] == base64.b64encode(b"\x01\x02").decode("ascii")
        assert params[1]["encoding"] == "base64"


class TestConfirmTransaction:
    """Test status polling."""

    @patch("app.services.ledger.time.sleep")
    def test_confirmed_after_polls(self, mock_sleep):
        """Polls until the wanted commitment is reached."""
        client, _ = _client(
            {"jsonrpc": "2.0", "id": 1, "result": {"value": [None]}},
            {"jsonrpc": "2.0", "id": 2, "result": {"value": [{"confirmationStatus": "processed", "err": None}]}},
            {"jsonrpc": "2.0", "id": 3, "result": {"value": [{"confirmationStatus": "confirmed", "err": None}]}},
        )
        assert client.confirm_transaction("sig", max_attempts=5, poll_interval=0.5) == "confirmed"
        assert mock_sleep.call_count == 2

    @patch("app.services.ledger.time.sleep")
    def test_failed_on_chain(self, mock_sleep):
        """A status with err reports failed."""
        client, _ = _client(
            {"jsonrpc": "2.0", "id": 1, "result": {"value": [{"confirmationStatus": "confirmed", "err": {"x": 1}}]}},
        )
        assert client.confirm_transaction("sig", max_attempts=3) == "failed"

    @patch("app.services.ledger.time.sleep")
    def test_timeout(self, mock_sleep):
        """Never confirmed within the budget reports timeout."""
        client, _ = _client(*[{"jsonrpc": "2.0", "id": n, "result": {"value": [None]}} for n in range(3)])
        assert client.confirm_transaction("sig", max_attempts=3) == "timeout"
        assert mock_sleep.call_count == 2

    @patch("app.services.ledger.time.sleep")
    def test_poll_errors_are_tolerated(self, mock_sleep):
        """Transient poll errors do not abort confirmation."""
        session = MagicMock()
        session.post.side_effect = [
            ConnectionError("blip"),
            _response({"jsonrpc": "2.0", "id": 2, "result": {"value": [{"confirmationStatus": "finalized", "err": None}]}}),
        ]
        client = SolanaRpcClient(rpc_url="https://rpc.example", commitment="confirmed", session=session)
        assert client.confirm_transaction("sig", max_attempts=3) == "finalized"
