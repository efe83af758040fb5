# app/x402/verification.py
"""
On-chain payment verification.

A buyer submits the signature of the transaction that paid for content.
The verifier fetches the committed transaction (retrying, because a
just-submitted transaction may not be visible on the replica yet),
rejects transactions that recorded an execution error, and checks the
recipient's balance delta:

- SOL: lamport delta of the recipient across meta.preBalances/postBalances
- USDC: raw token-amount delta of token accounts owned by the recipient
  for the configured mint

A payment is accepted when delta >= PAYMENT_TOLERANCE_PERCENT (95%) of the
expected amount. Verification is read-only and idempotent.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from requests.exceptions import RequestException

from app.core.config import settings
from app.core.errors import LedgerUnavailableError, PaymentRejected, PaymentValidationError
from app.services.ledger import LedgerRpcError, SolanaRpcClient
from app.x402.pricing import ASSET_SOL, validate_amount, validate_asset_type

logger = logging.getLogger(__name__)


class TransactionNotFound(Exception):
    """The ledger does not (yet) know the transaction."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded linear backoff: wait base_delay * attempt between attempts.

    With the defaults (3 attempts, 1s) the waits are 1s then 2s.
    """
    attempts: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.LEDGER_RETRY_ATTEMPTS,
            base_delay=settings.LEDGER_RETRY_BASE_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt


RETRYABLE_ERRORS = (TransactionNotFound, RequestException, LedgerRpcError)


def with_retry(
    fn: Callable[[], Any],
    context: str,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call fn until it succeeds or the policy is exhausted.

    Raises:
        LedgerUnavailableError: After the last failed attempt
    """
    retry = policy or RetryPolicy.from_settings()
    last_error: Optional[Exception] = None

    for attempt in range(1, retry.attempts + 1):
        try:
            return fn()
        except RETRYABLE_ERRORS as e:
            last_error = e
            logger.warning(f"{context} failed (attempt {attempt}/{retry.attempts}): {e}")
            if attempt < retry.attempts:
                sleep(retry.delay_for(attempt))

    logger.error(f"{context} failed after {retry.attempts} attempts: {last_error}")
    raise LedgerUnavailableError(f"{context} failed after {retry.attempts} attempts: {last_error}")


@dataclass
class PaymentVerification:
    valid: bool
    signature: str
    reason: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class PaymentLeg:
    """One expected transfer inside a payment transaction."""
    recipient: str
    amount: int
    asset_type: str = ASSET_SOL


def fetch_transaction(
    signature: str,
    ledger: SolanaRpcClient,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Dict[str, Any]:
    """Fetch a committed transaction, treating 'not found' as transient."""

    def _fetch() -> Dict[str, Any]:
        tx = ledger.get_transaction(signature)
        if not tx:
            raise TransactionNotFound("Transaction not found - may still be processing")
        return tx

    return with_retry(_fetch, f"Fetching transaction {signature[:16]}...", policy, sleep)


def get_account_keys(tx: Dict[str, Any]) -> List[str]:
    """Account keys in balance-array order, including v0 loaded addresses."""
    message = tx.get("transaction", {}).get("message", {})
    keys = []
    for key in message.get("accountKeys", []):
        keys.append(key["pubkey"] if isinstance(key, dict) else str(key))

    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def get_signer_keys(tx: Dict[str, Any]) -> List[str]:
    """Accounts that signed the transaction (the fee payer first)."""
    message = tx.get("transaction", {}).get("message", {})
    keys = message.get("accountKeys", [])
    if keys and isinstance(keys[0], dict):
        return [key["pubkey"] for key in keys if key.get("signer")]

    required = (message.get("header") or {}).get("numRequiredSignatures", 1)
    return [str(key) for key in keys[:required]]


def native_balance_delta(tx: Dict[str, Any], recipient: str) -> int:
    meta = tx["meta"]
    keys = get_account_keys(tx)
    if recipient not in keys:
        raise PaymentRejected("Recipient not found in transaction")

    index = keys.index(recipient)
    return int(meta["postBalances"][index]) - int(meta["preBalances"][index])


def token_balance_delta(tx: Dict[str, Any], recipient: str, mint: str) -> int:
    meta = tx["meta"]

    def _owned(entries: Optional[Iterable[Dict[str, Any]]]) -> Dict[int, int]:
        amounts = {}
        for entry in entries or []:
            if entry.get("owner") == recipient and entry.get("mint") == mint:
                amounts[entry["accountIndex"]] = int(entry["uiTokenAmount"]["amount"])
        return amounts

    pre = _owned(meta.get("preTokenBalances"))
    post = _owned(meta.get("postTokenBalances"))
    if not post:
        raise PaymentRejected("Token transfer not found")

    return sum(post[index] - pre.get(index, 0) for index in post)


def meets_tolerance(delta: int, expected: int, tolerance_percent: Optional[int] = None) -> bool:
    tolerance = tolerance_percent if tolerance_percent is not None else settings.PAYMENT_TOLERANCE_PERCENT
    return delta * 100 >= expected * tolerance


def inspect_transfer(tx: Dict[str, Any], leg: PaymentLeg) -> None:
    """
    Check one expected transfer against a fetched transaction.

    Raises:
        PaymentRejected: With a human-readable reason
    """
    meta = tx.get("meta")
    if not meta:
        raise PaymentRejected("Transaction metadata not available")

    if meta.get("err"):
        raise PaymentRejected(f"Transaction failed: {meta['err']}")

    if leg.asset_type == ASSET_SOL:
        delta = native_balance_delta(tx, leg.recipient)
    else:
        delta = token_balance_delta(tx, leg.recipient, settings.USDC_MINT_ADDRESS)

    if not meets_tolerance(delta, leg.amount):
        raise PaymentRejected(
            f"Insufficient payment. Expected {leg.amount} {leg.asset_type} units "
            f"to {leg.recipient[:8]}..., received {delta}"
        )


def _validate_leg(leg: PaymentLeg) -> PaymentLeg:
    if not leg.recipient:
        raise PaymentValidationError("Expected recipient is required")
    return PaymentLeg(
        recipient=leg.recipient,
        amount=validate_amount(leg.amount),
        asset_type=validate_asset_type(leg.asset_type),
    )


def verify_split_payment(
    signature: str,
    legs: Iterable[PaymentLeg],
    ledger: Optional[SolanaRpcClient] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    payer: Optional[str] = None
) -> PaymentVerification:
    """
    Verify that one transaction carries every non-zero leg of a payment.

    When payer is given the transaction must also be signed by that address,
    so an unclaimed payment cannot be presented by someone who only saw it.

    Returns:
        PaymentVerification. retryable=True means the ledger could not be
        reached/queried within the retry budget, not that the payment is wrong.

    Raises:
        PaymentValidationError: On malformed signature or legs
    """
    if not signature or not isinstance(signature, str):
        raise PaymentValidationError("Transaction signature is required")

    checked = [_validate_leg(leg) for leg in legs]
    client = ledger or SolanaRpcClient()

    logger.info(f"Verifying payment {signature[:16]}... ({len(checked)} legs)")

    try:
        tx = fetch_transaction(signature, client, policy, sleep)
    except LedgerUnavailableError as e:
        return PaymentVerification(valid=False, signature=signature, reason=str(e), retryable=True)

    try:
        if payer and payer not in get_signer_keys(tx):
            raise PaymentRejected("Payment transaction was not signed by the buyer")
        for leg in checked:
            if leg.amount == 0:
                continue
            inspect_transfer(tx, leg)
    except PaymentRejected as e:
        logger.warning(f"Payment verification failed for {signature[:16]}...: {e.reason}")
        return PaymentVerification(valid=False, signature=signature, reason=e.reason)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning(f"Malformed transaction {signature[:16]}...: {e}")
        return PaymentVerification(valid=False, signature=signature, reason=f"Malformed transaction: {e}")

    logger.info(f"Payment verified successfully: {signature[:16]}...")
    return PaymentVerification(valid=True, signature=signature)


def verify_payment(
    signature: str,
    expected_amount: int,
    expected_recipient: str,
    asset_type: str = ASSET_SOL,
    ledger: Optional[SolanaRpcClient] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep
) -> PaymentVerification:
    """Verify a single expected transfer (see verify_split_payment)."""
    return verify_split_payment(
        signature,
        [PaymentLeg(recipient=expected_recipient, amount=expected_amount, asset_type=asset_type)],
        ledger=ledger,
        policy=policy,
        sleep=sleep,
    )
