# app/api/deps.py
"""
Request dependencies shared by the endpoints.

The store, ledger client and vault wallet are built once in create_app()
and held on app.state; endpoints receive them through these dependencies.
Creator-owned resources are changed only with that creator's API key.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from app.core.errors import RateLimitExceeded
from app.services.ledger import SolanaRpcClient
from app.services.store import JsonStore
from app.x402 import audit
from app.x402.api_keys import authenticate_api_key, parse_bearer
from app.x402.ratelimit import GENERAL_LIMITER, SPONSOR_LIMITER, check_rate_limit, get_rate_limit_headers
from app.x402.vault import VaultWallet

logger = logging.getLogger(__name__)


def get_store(request: Request) -> JsonStore:
    return request.app.state.store


def get_ledger(request: Request) -> SolanaRpcClient:
    return request.app.state.ledger


def get_vault(request: Request) -> VaultWallet:
    return request.app.state.vault


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def _rate_limit_key(request: Request, client_ip: str) -> str:
    """An active API key is limited on its own; everything else per client IP."""
    api_key = parse_bearer(request.headers.get("Authorization"))
    record = authenticate_api_key(get_store(request), api_key, touch=False) if api_key else None
    if record is not None:
        return f"api_key:{record['id']}"
    return client_ip


def _enforce(request: Request, limiter_name: str, key: str) -> None:
    result = check_rate_limit(key, limiter_name)
    if result.allowed:
        return

    client_ip = get_client_ip(request)
    audit.log_rate_limited(client_ip, request.url.path, result.retry_after, rate_limit_key=key)
    raise RateLimitExceeded(result.retry_after, get_rate_limit_headers(result))


def rate_limit_general(request: Request) -> None:
    """General API ceiling (RATE_LIMIT_PER_MINUTE) per API key, or per client IP without one."""
    _enforce(request, GENERAL_LIMITER, _rate_limit_key(request, get_client_ip(request)))


def rate_limit_sponsor(request: Request) -> None:
    """Strict ceiling for sponsorship endpoints (SPONSOR_RATE_LIMIT per window) per client IP."""
    _enforce(request, SPONSOR_LIMITER, get_client_ip(request))


def require_api_key(
    request: Request,
    authorization: Optional[str] = Header(None, description="Bearer API key of the creator."),
    store: JsonStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Authenticate a creator API key.

    Raises:
        HTTPException: 401 when the key is missing, unknown or revoked
    """
    api_key = parse_bearer(authorization)
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is required. Pass it as: Authorization: Bearer <api-key>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    record = authenticate_api_key(store, api_key)
    if record is None:
        client_ip = get_client_ip(request)
        logger.warning(f"Rejected invalid API key from {client_ip} on {request.url.path}")
        audit.log_api_key_event(audit.AuditEventType.API_KEY_REJECTED, None, reason="invalid key", client_ip=client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return record


def authorize_creator(api_key: Dict[str, Any], creator_id: str) -> None:
    """
    Check that an authenticated key belongs to the creator being changed.

    Raises:
        HTTPException: 403 for another creator's key
    """
    if api_key["creator_id"] != creator_id:
        logger.warning(f"API key {api_key['id']} of {api_key['creator_id']} used for creator {creator_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key does not belong to this creator."
        )
