# app/x402/pricing.py
"""
Fee split and payment descriptors for x402 payment responses.

All amounts are integers in the minor unit of the priced asset:
- SOL: lamports (1 SOL = 10^9 lamports)
- USDC: 10^-6 USDC

The platform fee is floor(amount * fee_percent / 100) and the creator gets
the remainder, so platform_fee + creator_amount == amount exactly.

Configuration is loaded from app/core/config.py:
- PLATFORM_FEE_PERCENTAGE: Platform fee percentage (default 0.75)
- PAYMENT_TTL_MINUTES: How long a payment descriptor stays valid
- SOLANA_NETWORK: Network identifier included in descriptors
- VAULT_WALLET_ADDRESS: Destination for the platform fee
"""
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, Optional

from app.core.config import settings
from app.core.errors import PaymentValidationError

logger = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_SCHEME = "exact"

ASSET_SOL = "SOL"
ASSET_USDC = "USDC"
SUPPORTED_ASSETS = (ASSET_SOL, ASSET_USDC)

# Conversion constants
LAMPORTS_PER_SOL = 10 ** 9
USDC_UNITS = 10 ** 6
ASSET_DECIMALS = {ASSET_SOL: 9, ASSET_USDC: 6}


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: int
    creator_amount: int

    @property
    def total(self) -> int:
        return self.platform_fee + self.creator_amount


def validate_asset_type(asset_type: str) -> str:
    """Normalize an asset kind, rejecting anything unsupported."""
    normalized = (asset_type or "").upper()
    if normalized not in SUPPORTED_ASSETS:
        raise PaymentValidationError(
            f"Unknown asset type: {asset_type!r} (supported: {', '.join(SUPPORTED_ASSETS)})"
        )
    return normalized


def validate_amount(amount: Any) -> int:
    """Amounts are non-negative integers in minor units."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise PaymentValidationError(f"Amount must be an integer in minor units, got {amount!r}")
    if amount < 0:
        raise PaymentValidationError(f"Amount must not be negative, got {amount}")
    return amount


def _fee_percent(fee_percent: Optional[float]) -> Decimal:
    value = fee_percent if fee_percent is not None else settings.PLATFORM_FEE_PERCENTAGE
    try:
        # str() keeps 0.75 exact instead of its binary float expansion
        percent = Decimal(str(value))
    except InvalidOperation as e:
        raise PaymentValidationError(f"Invalid fee percentage: {value!r}") from e
    if not percent.is_finite() or percent < 0 or percent > 100:
        raise PaymentValidationError(f"Fee percentage must be between 0 and 100, got {value}")
    return percent


def compute_split(total_amount: int, fee_percent: Optional[float] = None) -> FeeSplit:
    """
    Split a payment between the platform treasury and the creator.

    Args:
        total_amount: Price in minor units
        fee_percent: Platform fee percentage. Uses config if not provided.

    Returns:
        FeeSplit where platform_fee + creator_amount == total_amount

    Raises:
        PaymentValidationError: On negative/non-integer amounts or fee outside [0, 100]
    """
    amount = validate_amount(total_amount)
    percent = _fee_percent(fee_percent)

    platform_fee = int((Decimal(amount) * percent / 100).to_integral_value(rounding=ROUND_FLOOR))
    return FeeSplit(platform_fee=platform_fee, creator_amount=amount - platform_fee)


def to_display_amount(amount: int, asset_type: str) -> str:
    """Format minor units as a decimal string (e.g. 1500000 USDC units -> '1.5')."""
    decimals = ASSET_DECIMALS[validate_asset_type(asset_type)]
    value = Decimal(amount) / (Decimal(10) ** decimals)
    return format(value.normalize(), "f")


def get_asset_address(asset_type: str) -> str:
    """Mint address for token assets, empty for the native asset."""
    if validate_asset_type(asset_type) == ASSET_USDC:
        return settings.USDC_MINT_ADDRESS
    return ""


def get_network_name(network: Optional[str] = None) -> str:
    """x402 network name (mainnet-beta is advertised as 'solana')."""
    value = network or settings.SOLANA_NETWORK
    return "solana" if value == "mainnet-beta" else value


def build_fee_breakdown(total_amount: int, split: FeeSplit, fee_percent: Decimal) -> Dict[str, Any]:
    creator_percent = Decimal(100) - fee_percent
    return {
        "contentPrice": total_amount,
        "platformFeeAmount": split.platform_fee,
        "platformFeePercent": f"{fee_percent}%",
        "creatorReceives": split.creator_amount,
        "creatorReceivesPercent": f"{creator_percent:.2f}%",
        "note": "Transaction fees excluded",
    }


def calculate_amounts(total_amount: int, fee_percent: Optional[float] = None) -> Dict[str, Any]:
    """
    Calculate the fee split with a display breakdown.

    Returns:
        Dict containing totalAmount, platformFee, creatorAmount, percentages and breakdown
    """
    percent = _fee_percent(fee_percent)
    split = compute_split(total_amount, float(percent))
    return {
        "totalAmount": total_amount,
        "platformFee": split.platform_fee,
        "creatorAmount": split.creator_amount,
        "platformFeePercentage": float(percent),
        "creatorPercentage": float(Decimal(100) - percent),
        "breakdown": build_fee_breakdown(total_amount, split, percent),
    }


def get_fee_info() -> Dict[str, Any]:
    """Fee information for display."""
    percent = _fee_percent(None)
    creator_percent = Decimal(100) - percent
    return {
        "platformFeePercentage": float(percent),
        "platformFeeDisplay": f"{percent}%",
        "creatorKeepsPercentage": float(creator_percent),
        "creatorKeepsDisplay": f"{creator_percent:.2f}%",
        "note": f"Flat {percent}% platform fee. Excludes network transaction fees.",
    }


def build_payment_descriptor(
    creator_address: str,
    amount: int,
    asset_type: str = ASSET_SOL,
    platform_fee_address: Optional[str] = None,
    resource: Optional[str] = None,
    description: str = "Content unlock",
    fee_percent: Optional[float] = None,
    ttl_seconds: Optional[int] = None,
    payment_id: Optional[str] = None,
    nonce: Optional[str] = None,
    expires_at: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build an x402-style description of the payment required for a resource.

    The descriptor names both destinations of the split (creator and
    platform vault), the network, a single-use nonce and an expiry.

    Args:
        creator_address: Creator payout address
        amount: Total price in minor units
        asset_type: "SOL" or "USDC"
        platform_fee_address: Platform fee destination. Uses VAULT_WALLET_ADDRESS if not provided.
        resource: URL or path being paid for
        description: Human readable description
        fee_percent: Platform fee percentage. Uses config if not provided.
        ttl_seconds: Descriptor lifetime. Uses PAYMENT_TTL_MINUTES if not provided.
        payment_id, nonce, expires_at: Identity of an already issued payment
            intent. Fresh values are generated when not provided.

    Raises:
        PaymentValidationError: On invalid amount, asset type or missing creator address
    """
    asset = validate_asset_type(asset_type)
    validate_amount(amount)
    if not creator_address:
        raise PaymentValidationError("Creator payout address is required")

    percent = _fee_percent(fee_percent)
    split = compute_split(amount, float(percent))
    now = int(time.time())
    if expires_at is None:
        ttl = ttl_seconds if ttl_seconds is not None else settings.PAYMENT_TTL_MINUTES * 60
        expires_at = now + ttl
    else:
        ttl = max(int(expires_at) - now, 0)

    return {
        "x402Version": X402_VERSION,
        "scheme": PAYMENT_SCHEME,
        "network": get_network_name(),
        "asset": get_asset_address(asset),
        "assetType": asset,
        "maxAmountRequired": str(amount),
        "payTo": creator_address,
        "platformFeeAddress": platform_fee_address or settings.VAULT_WALLET_ADDRESS,
        "platformFee": str(split.platform_fee),
        "platformFeePercentage": float(percent),
        "creatorAmount": str(split.creator_amount),
        "resource": resource,
        "description": description,
        "paymentId": payment_id or str(uuid.uuid4()),
        "nonce": nonce or secrets.token_urlsafe(16),
        "expiresAt": expires_at,
        "maxTimeoutSeconds": ttl,
        "feeBreakdown": build_fee_breakdown(amount, split, percent),
    }


def format_payment_instruction(content: Dict[str, Any]) -> Dict[str, Any]:
    """Render a content record as an x402 payment instruction listing entry."""
    return {
        "id": content["id"],
        "version": X402_VERSION,
        "payment_requirements": [{
            "asset": content["asset_type"],
            "pay_to": content["creator_wallet_address"],
            "network": get_network_name(),
            "description": content["title"],
            "max_amount_required": str(content["price"]),
        }],
        "name": content["title"],
        "description": content.get("description") or "",
        "created_at": content.get("created_at"),
    }
