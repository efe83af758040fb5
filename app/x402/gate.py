# app/x402/gate.py
"""
Access resolution for paywalled content.

For a (content, buyer) pair, in order:
1. A valid access token bound to this buyer and content grants access.
2. A payment signature plus payment intent id is checked against the
   intent and verified on the ledger. The transaction must be signed by
   the buyer. The intent is confirmed at most once, only while unexpired,
   and a ledger signature confirms at most one intent.
3. A signature that already confirmed this buyer's intent for this
   content is re-accepted and a fresh token issued.
4. Otherwise the buyer's open payment intent (or a new one) is
   returned as a descriptor (HTTP 402).

The content pointer is decrypted only after access is established.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from app.core.config import settings
from app.core.errors import DecryptionError
from app.services.ledger import SolanaRpcClient
from app.services.store import JsonStore, RecordConflict, utc_now_iso
from app.x402 import audit
from app.x402.crypto import decrypt_text
from app.x402.pricing import build_payment_descriptor
from app.x402.tokens import IssuedToken, issue_access_token, token_grants_access, verify_access_token
from app.x402.vault import VaultWallet
from app.x402.verification import PaymentLeg, RetryPolicy, verify_split_payment

logger = logging.getLogger(__name__)

INTENT_PENDING = "pending"
INTENT_CONFIRMED = "confirmed"
INTENT_EXPIRED = "expired"

# Open intents closer than this to expiry are not handed out again
INTENT_REUSE_MIN_SECONDS = 60

REASON_INTENT_EXPIRED = "Payment intent expired"


class AccessOutcome(Enum):
    GRANTED = "granted"
    PAYMENT_REQUIRED = "payment_required"
    RETRYABLE = "retryable"
    REJECTED = "rejected"


@dataclass
class AccessDecision:
    outcome: AccessOutcome
    reason: Optional[str] = None
    pointer: Optional[str] = None
    token: Optional[IssuedToken] = None
    descriptor: Optional[Dict[str, Any]] = None
    payment_id: Optional[str] = None
    via: Optional[str] = None


def _issued_at_current_price(intent: Dict[str, Any], content: Dict[str, Any], vault: VaultWallet) -> bool:
    return (
        intent["amount"] == content["price"]
        and intent["asset_type"] == str(content["asset_type"]).upper()
        and intent["creator_wallet_address"] == content["creator_wallet_address"]
        and intent.get("platform_fee_address") == vault.address
    )


def find_open_intent(
    content: Dict[str, Any],
    buyer: str,
    store: JsonStore,
    vault: VaultWallet,
    now: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    """
    Return the buyer's pending intent for content that can still be paid.

    Pending intents past expiry are marked expired on the way. Intents
    issued at another price, or with less than INTENT_REUSE_MIN_SECONDS
    left, are skipped but stay pending so an in-flight payment can land.
    """
    current = now if now is not None else time.time()
    reusable = []
    for intent in store.list("payment_intents", content_id=content["id"], buyer=buyer, status=INTENT_PENDING):
        if intent_is_expired(intent, current):
            _expire_intent(store, intent)
        elif intent["expires_at"] - current >= INTENT_REUSE_MIN_SECONDS and _issued_at_current_price(intent, content, vault):
            reusable.append(intent)

    if not reusable:
        return None
    return max(reusable, key=lambda intent: intent["expires_at"])


def describe_intent(intent: Dict[str, Any], resource: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
    """Rebuild the payment descriptor of an issued intent."""
    return build_payment_descriptor(
        creator_address=intent["creator_wallet_address"],
        amount=intent["amount"],
        asset_type=intent["asset_type"],
        platform_fee_address=intent["platform_fee_address"],
        resource=resource,
        description=description or "Content unlock",
        payment_id=intent["id"],
        nonce=intent["nonce"],
        expires_at=intent["expires_at"],
    )


def create_payment_intent(
    content: Dict[str, Any],
    buyer: str,
    store: JsonStore,
    vault: VaultWallet,
    resource: Optional[str] = None
) -> Dict[str, Any]:
    """
    Return the descriptor of the buyer's open payment intent for content.

    An open intent at the current price is reused; otherwise a new pending
    intent is recorded. The intent keeps the price and split it was issued at.
    """
    description = content.get("title") or "Content unlock"

    with store.key_lock("payment_intents", f"{content['id']}:{buyer}"):
        existing = find_open_intent(content, buyer, store, vault)
        if existing is not None:
            return describe_intent(existing, resource, description)

        descriptor = build_payment_descriptor(
            creator_address=content["creator_wallet_address"],
            amount=content["price"],
            asset_type=content["asset_type"],
            platform_fee_address=vault.address,
            resource=resource,
            description=description,
        )

        store.create("payment_intents", descriptor["paymentId"], {
            "id": descriptor["paymentId"],
            "content_id": content["id"],
            "buyer": buyer,
            "amount": content["price"],
            "asset_type": descriptor["assetType"],
            "creator_wallet_address": content["creator_wallet_address"],
            "platform_fee_address": vault.address,
            "platform_fee": int(descriptor["platformFee"]),
            "creator_amount": int(descriptor["creatorAmount"]),
            "nonce": descriptor["nonce"],
            "expires_at": descriptor["expiresAt"],
            "status": INTENT_PENDING,
            "signature": None,
        })
    return descriptor


def intent_is_expired(intent: Dict[str, Any], now: Optional[float] = None) -> bool:
    if intent.get("status") == INTENT_EXPIRED:
        return True
    current = now if now is not None else time.time()
    return intent.get("status") == INTENT_PENDING and intent["expires_at"] <= current


def _expire_intent(store: JsonStore, intent: Dict[str, Any]) -> None:
    try:
        store.update("payment_intents", intent["id"], {"status": INTENT_EXPIRED}, expected={"status": INTENT_PENDING})
    except RecordConflict:
        pass


def _payment_required(
    content: Dict[str, Any],
    buyer: str,
    store: JsonStore,
    vault: VaultWallet,
    reason: Optional[str],
    resource: Optional[str],
    client_ip: Optional[str]
) -> AccessDecision:
    descriptor = create_payment_intent(content, buyer, store, vault, resource)
    audit.log_payment_required_sent(
        buyer=buyer,
        content_id=content["id"],
        payment_id=descriptor["paymentId"],
        amount=content["price"],
        asset_type=descriptor["assetType"],
        client_ip=client_ip,
    )
    return AccessDecision(
        outcome=AccessOutcome.PAYMENT_REQUIRED,
        reason=reason,
        descriptor=descriptor,
        payment_id=descriptor["paymentId"],
    )


def _open_pointer(content: Dict[str, Any], buyer: str, client_ip: Optional[str]) -> str:
    try:
        return decrypt_text(content["encrypted_pointer"])
    except DecryptionError as e:
        logger.error(f"Failed to decrypt pointer for content {content['id']}: {e}")
        audit.log_access_denied(buyer, content["id"], f"decryption failed: {e}", client_ip=client_ip)
        raise


def _grant(
    content: Dict[str, Any],
    buyer: str,
    store: JsonStore,
    intent: Dict[str, Any],
    via: str,
    client_ip: Optional[str]
) -> AccessDecision:
    pointer = _open_pointer(content, buyer, client_ip)
    issued = issue_access_token({"buyer": buyer, "contentId": content["id"]})

    store.create("access_grants", issued.token_id, {
        "token_id": issued.token_id,
        "content_id": content["id"],
        "buyer": buyer,
        "payment_intent_id": intent["id"],
        "expires_at": issued.expires_at,
    })
    audit.log_access_granted(buyer, content["id"], issued.token_id, via, client_ip=client_ip)

    return AccessDecision(
        outcome=AccessOutcome.GRANTED,
        pointer=pointer,
        token=issued,
        payment_id=intent["id"],
        via=via,
    )


def _check_token(
    content: Dict[str, Any],
    buyer: str,
    access_token: str,
    client_ip: Optional[str]
) -> Optional[AccessDecision]:
    verification = verify_access_token(access_token)
    if token_grants_access(verification, buyer, content["id"]):
        pointer = _open_pointer(content, buyer, client_ip)
        return AccessDecision(outcome=AccessOutcome.GRANTED, pointer=pointer, via="token")

    reason = verification.error or "Token not valid for this content"
    audit.log_access_denied(buyer, content["id"], reason, client_ip=client_ip)
    return None


def _confirm_intent(
    store: JsonStore,
    intent: Dict[str, Any],
    signature: str
) -> Optional[str]:
    """
    Move an intent pending -> confirmed with this signature.

    The intent is re-read under the signature lock; one that expired while
    the payment was being verified is marked expired instead.

    Returns:
        None on success, otherwise the rejection reason
    """
    with store.key_lock("payment_signatures", signature):
        used_by = store.find_one("payment_intents", signature=signature)
        if used_by is not None and used_by["id"] != intent["id"]:
            return "Payment signature already used"

        current = store.get("payment_intents", intent["id"])
        if current is None:
            return "Unknown payment intent"
        if intent_is_expired(current):
            _expire_intent(store, current)
            logger.warning(f"Payment intent {intent['id']} expired during verification of {signature[:16]}...")
            return REASON_INTENT_EXPIRED

        try:
            store.update(
                "payment_intents",
                intent["id"],
                {"status": INTENT_CONFIRMED, "signature": signature, "confirmed_at": utc_now_iso()},
                expected={"status": INTENT_PENDING, "expires_at": current["expires_at"]},
            )
        except RecordConflict:
            current = store.get("payment_intents", intent["id"]) or {}
            if current.get("status") == INTENT_CONFIRMED and current.get("signature") == signature:
                return None
            return "Payment intent is no longer pending"
    return None


def resolve_access(
    content: Dict[str, Any],
    buyer: str,
    store: JsonStore,
    ledger: SolanaRpcClient,
    vault: VaultWallet,
    access_token: Optional[str] = None,
    payment_signature: Optional[str] = None,
    payment_id: Optional[str] = None,
    resource: Optional[str] = None,
    client_ip: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep
) -> AccessDecision:
    """
    Decide whether buyer may open content, verifying a payment if one is presented.

    Raises:
        PaymentValidationError: On malformed payment input
        DecryptionError: If access was established but the pointer cannot be decrypted
    """
    if access_token:
        decision = _check_token(content, buyer, access_token, client_ip)
        if decision is not None:
            return decision

    if not payment_signature:
        return _payment_required(content, buyer, store, vault, None, resource, client_ip)

    intent = store.get("payment_intents", payment_id) if payment_id else None
    if intent is None:
        intent = store.find_one(
            "payment_intents",
            content_id=content["id"],
            buyer=buyer,
            signature=payment_signature,
            status=INTENT_CONFIRMED,
        )
    if intent is None:
        reason = "Unknown payment intent"
        audit.log_payment_failed(buyer, reason, "intent", signature=payment_signature, client_ip=client_ip)
        return _payment_required(content, buyer, store, vault, reason, resource, client_ip)

    if intent["buyer"] != buyer or intent["content_id"] != content["id"]:
        reason = "Payment intent does not match this buyer and content"
        logger.warning(f"Payment intent {intent['id']} presented for wrong buyer/content by {buyer}")
        audit.log_payment_failed(buyer, reason, "intent", signature=payment_signature, client_ip=client_ip)
        return AccessDecision(outcome=AccessOutcome.REJECTED, reason=reason, payment_id=intent["id"])

    if intent["status"] == INTENT_CONFIRMED:
        if intent.get("signature") == payment_signature:
            return _grant(content, buyer, store, intent, "prior_payment", client_ip)
        reason = "Payment intent already confirmed with a different signature"
        audit.log_payment_failed(buyer, reason, "intent", signature=payment_signature, client_ip=client_ip)
        return AccessDecision(outcome=AccessOutcome.REJECTED, reason=reason, payment_id=intent["id"])

    if intent_is_expired(intent):
        _expire_intent(store, intent)
        reason = REASON_INTENT_EXPIRED
        audit.log_payment_failed(buyer, reason, "intent", signature=payment_signature, client_ip=client_ip)
        return _payment_required(content, buyer, store, vault, reason, resource, client_ip)

    used_by = store.find_one("payment_intents", signature=payment_signature)
    if used_by is not None:
        reason = "Payment signature already used"
        logger.warning(f"Replayed payment signature {payment_signature[:16]}... from {buyer}")
        audit.log_payment_failed(buyer, reason, "replay", signature=payment_signature, client_ip=client_ip)
        return AccessDecision(outcome=AccessOutcome.REJECTED, reason=reason, payment_id=intent["id"])

    legs = [
        PaymentLeg(intent["creator_wallet_address"], intent["creator_amount"], intent["asset_type"]),
        PaymentLeg(intent.get("platform_fee_address") or vault.address, intent["platform_fee"], intent["asset_type"]),
    ]
    payer = buyer if settings.PAYMENT_REQUIRE_BUYER_SIGNATURE else None
    verification = verify_split_payment(payment_signature, legs, ledger=ledger, policy=policy, sleep=sleep, payer=payer)

    if verification.retryable:
        audit.log_payment_failed(
            buyer, verification.reason, "verification",
            signature=payment_signature, retryable=True, client_ip=client_ip,
        )
        return AccessDecision(outcome=AccessOutcome.RETRYABLE, reason=verification.reason, payment_id=intent["id"])

    if not verification.valid:
        audit.log_payment_failed(buyer, verification.reason, "verification", signature=payment_signature, client_ip=client_ip)
        return _payment_required(content, buyer, store, vault, verification.reason, resource, client_ip)

    rejection = _confirm_intent(store, intent, payment_signature)
    if rejection == REASON_INTENT_EXPIRED:
        audit.log_payment_failed(buyer, rejection, "confirm", signature=payment_signature, client_ip=client_ip)
        return _payment_required(content, buyer, store, vault, rejection, resource, client_ip)
    if rejection:
        audit.log_payment_failed(buyer, rejection, "confirm", signature=payment_signature, client_ip=client_ip)
        return AccessDecision(outcome=AccessOutcome.REJECTED, reason=rejection, payment_id=intent["id"])

    logger.info(f"Payment intent {intent['id']} confirmed by {payment_signature[:16]}...")
    audit.log_payment_verified(buyer, content["id"], intent["id"], payment_signature, client_ip=client_ip)
    return _grant(content, buyer, store, intent, "payment", client_ip)


def has_confirmed_payment(content_id: str, store: JsonStore) -> bool:
    """True once any payment intent for this content has been confirmed."""
    return store.find_one("payment_intents", content_id=content_id, status=INTENT_CONFIRMED) is not None
