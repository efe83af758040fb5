# app/x402/tokens.py
"""
Short-lived access tokens for unlocked content.

A token is an HS256 JWT: base64url(header).base64url(payload).base64url(hmac).
The payload binds one buyer to one content id and carries iat/exp (unix
seconds) plus a random tokenId. Tokens are stateless; they are never
extended and there is no revocation list, so lifetimes stay short
(ACCESS_TOKEN_TTL_SECONDS, default 5 minutes).

By default an embedded expiry that has already passed is rejected before
the HMAC is checked. Setting ACCESS_TOKEN_VERIFY_SIGNATURE_FIRST=true
checks the signature first.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from app.core.config import settings
from app.core.errors import PaymentValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["exp", "iat", "tokenId"]

ERROR_FORMAT = "Invalid token format"
ERROR_EXPIRED = "Token expired"
ERROR_SIGNATURE = "Invalid signature"


@dataclass
class IssuedToken:
    token: str
    token_id: str
    expires_at: int


@dataclass
class TokenVerification:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _secret(secret: Optional[str]) -> str:
    return secret if secret is not None else settings.ACCESS_TOKEN_SECRET


def issue_access_token(
    payload: Dict[str, Any],
    ttl_seconds: Optional[int] = None,
    secret: Optional[str] = None
) -> IssuedToken:
    """
    Mint a signed access token.

    Args:
        payload: Claims to embed, typically {"buyer": ..., "contentId": ...}
        ttl_seconds: Lifetime in seconds. Uses ACCESS_TOKEN_TTL_SECONDS if not provided.
        secret: HMAC secret. Uses ACCESS_TOKEN_SECRET if not provided.

    Returns:
        IssuedToken with the encoded token, its id and absolute expiry

    Raises:
        PaymentValidationError: If ttl_seconds is not positive
    """
    ttl = ttl_seconds if ttl_seconds is not None else settings.ACCESS_TOKEN_TTL_SECONDS
    if ttl <= 0:
        raise PaymentValidationError("ttl_seconds must be positive")

    now = int(time.time())
    token_id = secrets.token_hex(16)
    claims = {
        **payload,
        "iat": now,
        "exp": now + ttl,
        "tokenId": token_id,
    }

    token = jwt.encode(claims, _secret(secret), algorithm=ALGORITHM)
    return IssuedToken(token=token, token_id=token_id, expires_at=claims["exp"])


def _has_token_structure(token: Any) -> bool:
    if not isinstance(token, str):
        return False
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def _embedded_expiry_passed(token: str, now: float) -> bool:
    """Read exp without verifying the signature. Unreadable payloads return False."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return False
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return isinstance(exp, (int, float)) and exp <= now


def verify_access_token(token: str, secret: Optional[str] = None) -> TokenVerification:
    """
    Verify an access token.

    Returns:
        TokenVerification. error is one of "Invalid token format",
        "Token expired", "Invalid signature" or a claim-specific message.
    """
    if not _has_token_structure(token):
        return TokenVerification(valid=False, error=ERROR_FORMAT)

    if not settings.ACCESS_TOKEN_VERIFY_SIGNATURE_FIRST and _embedded_expiry_passed(token, time.time()):
        logger.info("Rejected expired access token")
        return TokenVerification(valid=False, error=ERROR_EXPIRED)

    try:
        claims = jwt.decode(
            token,
            _secret(secret),
            algorithms=[ALGORITHM],
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return TokenVerification(valid=False, error=ERROR_EXPIRED)
    except jwt.InvalidSignatureError:
        logger.warning("Rejected access token with invalid signature")
        return TokenVerification(valid=False, error=ERROR_SIGNATURE)
    except jwt.MissingRequiredClaimError as e:
        logger.warning(f"Rejected access token: {e}")
        return TokenVerification(valid=False, error=str(e))
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected malformed access token: {e}")
        return TokenVerification(valid=False, error=ERROR_FORMAT)

    return TokenVerification(valid=True, payload=claims)


def token_grants_access(verification: TokenVerification, buyer: str, content_id: str) -> bool:
    """Check that a verified token is bound to this buyer and content item."""
    if not verification.valid or not verification.payload:
        return False
    return (
        verification.payload.get("buyer") == buyer
        and verification.payload.get("contentId") == content_id
    )
