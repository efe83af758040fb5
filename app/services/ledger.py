# app/services/ledger.py
"""
JSON-RPC client for the Solana ledger.

Every call is network I/O and may return "not found" transiently for a
just-submitted transaction; callers decide whether to retry (see
app.x402.verification.RetryPolicy). Each request carries its own timeout.
"""
import base64
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException

from app.core.config import settings

logger = logging.getLogger(__name__)


class LedgerRpcError(Exception):
    """The RPC node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any):
        super().__init__(f"RPC error from {method}: {error}")
        self.method = method
        self.error = error


class SolanaRpcClient:
    """
    Minimal Solana JSON-RPC client.

    Transport errors propagate as requests.exceptions.RequestException,
    RPC-level errors as LedgerRpcError.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        commitment: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None
    ):
        self.rpc_url = str(rpc_url or settings.SOLANA_RPC_URL)
        self.commitment = commitment or settings.SOLANA_COMMITMENT
        self.timeout = timeout if timeout is not None else settings.SOLANA_RPC_TIMEOUT_SECONDS
        self._session = session or requests.Session()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        response = self._session.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params,
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise LedgerRpcError(method, result["error"])

        if "result" not in result:
            raise LedgerRpcError(method, "Invalid RPC response: missing 'result' field")

        return result["result"]

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a committed transaction by signature.

        Returns:
            The transaction (json encoding, with meta) or None if not visible yet
        """
        return self._call("getTransaction", [
            signature,
            {
                "encoding": "json",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            },
        ])

    def get_balance(self, address: str) -> int:
        """Lamport balance of an address."""
        result = self._call("getBalance", [address, {"commitment": self.commitment}])
        if isinstance(result, dict):
            return int(result.get("value", 0))
        return int(result)

    def get_signatures_for_address(self, address: str, limit: int = 1) -> List[Dict[str, Any]]:
        """Most recent transaction signatures involving an address."""
        result = self._call("getSignaturesForAddress", [
            address,
            {"limit": limit, "commitment": self.commitment},
        ])
        return result or []

    def get_latest_blockhash(self) -> Dict[str, Any]:
        """Returns {"blockhash": str, "lastValidBlockHeight": int}."""
        result = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Submit a fully signed, serialized transaction. Returns its signature."""
        encoded = base64.b64encode(raw_transaction).decode("ascii")
        signature = self._call("sendTransaction", [
            encoded,
            {
                "encoding": "base64",
                "skipPreflight": False,
                "preflightCommitment": self.commitment,
                "maxRetries": 3,
            },
        ])
        logger.info(f"Submitted transaction {signature[:16]}...")
        return signature

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = self._call("getSignatureStatuses", [
            [signature],
            {"searchTransactionHistory": True},
        ])
        statuses = result.get("value") or [None]
        return statuses[0]

    def confirm_transaction(
        self,
        signature: str,
        max_attempts: int = 30,
        poll_interval: float = 1.0
    ) -> str:
        """
        Poll until the transaction reaches the configured commitment.

        Returns:
            "confirmed", "finalized", "failed" or "timeout"
        """
        wanted = ("confirmed", "finalized") if self.commitment != "finalized" else ("finalized",)

        for attempt in range(1, max_attempts + 1):
            try:
                status = self.get_signature_status(signature)
            except (RequestException, LedgerRpcError) as e:
                logger.warning(f"Status poll for {signature[:16]}... failed (attempt {attempt}/{max_attempts}): {e}")
                status = None

            if status:
                if status.get("err"):
                    logger.warning(f"Transaction {signature[:16]}... failed on-chain: {status['err']}")
                    return "failed"
                if status.get("confirmationStatus") in wanted:
                    return status["confirmationStatus"]

            if attempt < max_attempts:
                time.sleep(poll_interval)

        logger.error(f"Transaction {signature[:16]}... not confirmed after {max_attempts} polls")
        return "timeout"
