# app/x402/vault.py
"""
Platform vault wallet and funding monitor.

The vault keypair receives platform fees and pays transaction fees for
sponsored users. It is loaded once at startup (load_vault_wallet) and
passed explicitly to every component that signs with it; nothing mutates
it after construction.

Balance thresholds are configured via environment variables in app/core/config.py:
- VAULT_BALANCE_WARN_LAMPORTS
- VAULT_BALANCE_CRITICAL_LAMPORTS
"""
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from requests.exceptions import RequestException
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from app.core.config import settings
from app.core.errors import ConfigurationError
from app.services.ledger import LedgerRpcError, SolanaRpcClient
from app.x402.pricing import LAMPORTS_PER_SOL

logger = logging.getLogger(__name__)

# Cache for balance checks (avoid hammering RPC endpoint)
_balance_cache: Dict[str, Any] = {
    "balance_lamports": None,
    "timestamp": 0,
}
CACHE_TTL_SECONDS = 60  # Cache balance for 60 seconds


@dataclass(frozen=True)
class VaultWallet:
    """Read-only holder of the vault keypair."""
    keypair: Keypair = field(repr=False)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def generate_vault_wallet() -> Dict[str, str]:
    """
    Generate a new vault keypair.

    Returns:
        Dict with "address" and base64 "private_key" suitable for
        VAULT_WALLET_ADDRESS / VAULT_WALLET_PRIVATE_KEY.
    """
    keypair = Keypair()
    return {
        "address": str(keypair.pubkey()),
        "private_key": base64.b64encode(bytes(keypair)).decode("ascii"),
    }


def load_vault_wallet(
    private_key_b64: Optional[str] = None,
    address: Optional[str] = None
) -> VaultWallet:
    """
    Load the vault keypair from its base64 encoded 64-byte secret key.

    Args:
        private_key_b64: Uses VAULT_WALLET_PRIVATE_KEY if not provided
        address: Expected public address. Uses VAULT_WALLET_ADDRESS if not provided.

    Raises:
        ConfigurationError: If either value is missing, malformed or they do not match
    """
    private_key_b64 = private_key_b64 if private_key_b64 is not None else settings.VAULT_WALLET_PRIVATE_KEY
    address = address if address is not None else settings.VAULT_WALLET_ADDRESS

    if not private_key_b64 or not address:
        raise ConfigurationError("VAULT_WALLET_PRIVATE_KEY and VAULT_WALLET_ADDRESS must be set")

    try:
        secret_key = base64.b64decode(private_key_b64, validate=True)
        keypair = Keypair.from_bytes(secret_key)
    except Exception as e:
        logger.error(f"Error loading vault wallet: {e}")
        raise ConfigurationError("Failed to load vault wallet: invalid private key") from e

    if str(keypair.pubkey()) != address:
        raise ConfigurationError("Vault wallet address does not match private key")

    logger.info(f"Loaded vault wallet {address[:8]}...")
    return VaultWallet(keypair=keypair)


def _get_cached_balance() -> Optional[int]:
    """
    Get cached balance if still valid.

    Returns:
        Cached balance in lamports, or None if cache expired/empty
    """
    if _balance_cache["balance_lamports"] is None:
        return None

    age = time.time() - _balance_cache["timestamp"]
    if age > CACHE_TTL_SECONDS:
        return None

    return _balance_cache["balance_lamports"]


def _update_cache(balance_lamports: int) -> None:
    """Update the balance cache."""
    _balance_cache["balance_lamports"] = balance_lamports
    _balance_cache["timestamp"] = time.time()


def clear_balance_cache() -> None:
    """Clear the balance cache (useful for testing)."""
    _balance_cache["balance_lamports"] = None
    _balance_cache["timestamp"] = 0


def check_vault_balance(vault: VaultWallet, ledger: SolanaRpcClient) -> Dict[str, Any]:
    """
    Check the vault's SOL balance against configured thresholds.

    The vault must stay funded to pay sponsored transaction fees. Results
    are cached for 60 seconds to avoid excessive RPC calls.

    Returns:
        Dict containing:
        - ok: bool - whether balance is above warning threshold
        - is_critical: bool - whether balance is below critical threshold
        - balance_lamports: int
        - balance_sol: float
        - warn_lamports / critical_lamports: thresholds
        - address: str - vault address
        - warning: str or None
    """
    warn_threshold = settings.VAULT_BALANCE_WARN_LAMPORTS
    critical_threshold = settings.VAULT_BALANCE_CRITICAL_LAMPORTS

    try:
        balance = _get_cached_balance()
        if balance is None:
            balance = ledger.get_balance(vault.address)
            _update_cache(balance)
            logger.debug(f"Fetched vault balance: {lamports_to_sol(balance):.6f} SOL")
    except (RequestException, LedgerRpcError) as e:
        logger.error(f"Failed to check vault balance: {e}")
        return {
            "ok": False,
            "is_critical": True,  # Treat RPC errors as critical (can't verify)
            "balance_lamports": 0,
            "balance_sol": 0.0,
            "warn_lamports": warn_threshold,
            "critical_lamports": critical_threshold,
            "address": vault.address,
            "warning": f"Failed to fetch vault balance: {e}"
        }

    is_critical = balance < critical_threshold
    ok = balance >= warn_threshold

    warning = None
    if is_critical:
        warning = (
            f"Vault balance critically low ({lamports_to_sol(balance):.6f} SOL). "
            f"Sponsored transactions will fail. Top up immediately!"
        )
        logger.error(f"Vault check: {warning}")
    elif not ok:
        warning = (
            f"Vault balance ({lamports_to_sol(balance):.6f} SOL) is below warning threshold "
            f"({lamports_to_sol(warn_threshold)} SOL). Top up soon."
        )
        logger.warning(f"Vault check: {warning}")

    return {
        "ok": ok,
        "is_critical": is_critical,
        "balance_lamports": balance,
        "balance_sol": lamports_to_sol(balance),
        "warn_lamports": warn_threshold,
        "critical_lamports": critical_threshold,
        "address": vault.address,
        "warning": warning
    }
