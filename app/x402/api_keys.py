# app/x402/api_keys.py
"""
Creator API keys.

Creators authenticate the calls that change their catalogue with
`Authorization: Bearer <api-key>`. A key is 32 random bytes, hex encoded,
and is returned once when it is created. Only its SHA-256 digest is kept
in the api_keys collection, next to the owning creator, a name and the
last time it was used. Revoked keys stay on record with is_active=False.
"""
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.services.store import JsonStore, RecordNotFound, utc_now_iso

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "
KEY_PREFIX_LENGTH = 8


@dataclass
class IssuedApiKey:
    key_id: str
    api_key: str
    record: Dict[str, Any]


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the key from an Authorization header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    api_key = authorization[len(BEARER_PREFIX):].strip()
    return api_key or None


def public_view(record: Dict[str, Any]) -> Dict[str, Any]:
    """A key record without its digest."""
    return {field: value for field, value in record.items() if field != "key_hash"}


def create_api_key(store: JsonStore, creator_id: str, name: Optional[str] = None) -> IssuedApiKey:
    """
    Issue a new API key for a creator.

    Returns:
        IssuedApiKey. api_key is the only copy of the secret.
    """
    api_key = secrets.token_hex(32)
    key_id = f"key_{uuid.uuid4().hex[:16]}"

    record = store.create("api_keys", key_id, {
        "id": key_id,
        "creator_id": creator_id,
        "name": name or "default",
        "key_hash": hash_api_key(api_key),
        "key_prefix": api_key[:KEY_PREFIX_LENGTH],
        "is_active": True,
        "last_used_at": None,
    })
    logger.info(f"Created API key {key_id} for creator {creator_id}")
    return IssuedApiKey(key_id=key_id, api_key=api_key, record=public_view(record))


def authenticate_api_key(store: JsonStore, api_key: Optional[str], touch: bool = True) -> Optional[Dict[str, Any]]:
    """
    Look up an active key.

    Args:
        touch: Record last_used_at. Lookups that only pick a rate-limit key skip the write.

    Returns:
        The key record (without digest) or None if unknown or revoked
    """
    if not api_key:
        return None

    record = store.find_one("api_keys", key_hash=hash_api_key(api_key), is_active=True)
    if record is None:
        return None

    if touch:
        record = store.update("api_keys", record["id"], {"last_used_at": utc_now_iso()})
    return public_view(record)


def list_api_keys(store: JsonStore, creator_id: str) -> List[Dict[str, Any]]:
    records = sorted(store.list("api_keys", creator_id=creator_id), key=lambda r: r.get("created_at") or "")
    return [public_view(r) for r in records]


def revoke_api_key(store: JsonStore, key_id: str, creator_id: str) -> Dict[str, Any]:
    """
    Deactivate one of a creator's keys.

    Raises:
        RecordNotFound: If the key does not exist or belongs to another creator
    """
    record = store.get("api_keys", key_id)
    if record is None or record["creator_id"] != creator_id:
        raise RecordNotFound(f"api_keys/{key_id}")

    updated = store.update("api_keys", key_id, {"is_active": False, "revoked_at": utc_now_iso()})
    logger.info(f"Revoked API key {key_id} of creator {creator_id}")
    return public_view(updated)
