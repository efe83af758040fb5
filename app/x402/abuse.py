# app/x402/abuse.py
"""
Abuse heuristics around fee sponsorship.

These checks produce signals for operator review; they never block a
request on their own, so a false positive cannot lock out a legitimate
new user. Hard limits are enforced by rate limiting and eligibility.

Configuration:
- ABUSE_MAX_WALLETS_PER_IP: Sponsored wallets per IP before flagging (default: 3)
- ABUSE_MIN_ACCOUNT_AGE_SECONDS: Creator accounts younger than this are flagged (default: 60)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from requests.exceptions import RequestException

from app.core.config import settings
from app.services.ledger import LedgerRpcError, SolanaRpcClient
from app.services.store import JsonStore

logger = logging.getLogger(__name__)

PATTERN_SHARED_IP = "Multiple wallets from same IP"
PATTERN_NEW_ACCOUNT = "Account created very recently"


@dataclass
class SuspicionReport:
    suspicious: bool
    patterns: List[str] = field(default_factory=list)


def check_wallet_age(wallet_address: str, ledger: SolanaRpcClient) -> Dict[str, Any]:
    """
    Check whether a wallet looks brand new (no history on the ledger).

    Ledger errors report the wallet as not new.

    Returns:
        Dict with is_new plus first_tx/first_tx_time or balance
    """
    try:
        signatures = ledger.get_signatures_for_address(wallet_address, limit=1)
        if signatures:
            return {
                "is_new": False,
                "first_tx": signatures[0].get("signature"),
                "first_tx_time": signatures[0].get("blockTime"),
            }

        balance = ledger.get_balance(wallet_address)
        return {
            "is_new": True,
            "balance": balance,
            "has_transactions": False,
        }
    except (RequestException, LedgerRpcError) as e:
        logger.error(f"Error checking wallet age for {wallet_address}: {e}")
        return {
            "is_new": False,
            "error": str(e),
        }


def _account_age_seconds(created_at: Optional[str], now: datetime) -> Optional[float]:
    if not created_at:
        return None
    try:
        created = datetime.fromisoformat(created_at)
    except ValueError:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now - created).total_seconds()


def detect_suspicious_activity(
    wallet_address: str,
    client_ip: Optional[str],
    store: JsonStore,
    now: Optional[datetime] = None
) -> SuspicionReport:
    """
    Score a sponsorship request.

    Flags:
    - more than ABUSE_MAX_WALLETS_PER_IP sponsorship records from the same IP
    - a creator account for this wallet created under ABUSE_MIN_ACCOUNT_AGE_SECONDS ago
    """
    current = now or datetime.now(timezone.utc)
    patterns = []

    if client_ip and client_ip != "unknown":
        wallets_from_ip = len(store.list("sponsorships", client_ip=client_ip))
        if wallets_from_ip > settings.ABUSE_MAX_WALLETS_PER_IP:
            patterns.append(PATTERN_SHARED_IP)

    account = store.find_one("creators", wallet_address=wallet_address)
    if account:
        age = _account_age_seconds(account.get("created_at"), current)
        if age is not None and age < settings.ABUSE_MIN_ACCOUNT_AGE_SECONDS:
            patterns.append(PATTERN_NEW_ACCOUNT)

    if patterns:
        logger.warning(f"Suspicious activity for {wallet_address} from {client_ip}: {patterns}")

    return SuspicionReport(suspicious=bool(patterns), patterns=patterns)
