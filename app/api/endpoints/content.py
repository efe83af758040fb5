# app/api/endpoints/content.py
from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, status
from starlette.responses import JSONResponse
from typing import Any, Dict, Optional
import uuid
import logging

from app.api.deps import (
    authorize_creator,
    get_client_ip,
    get_ledger,
    get_store,
    get_vault,
    rate_limit_general,
    require_api_key,
)
from app.api.models.content import (
    AccessGrantResponse,
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    ContentCreateRequest,
    ContentListResponse,
    ContentResponse,
    ContentUpdateRequest,
    CreatorCreatedResponse,
    CreatorCreateRequest,
    CreatorResponse,
)
from app.core.errors import DecryptionError, PaymentValidationError
from app.services.ledger import SolanaRpcClient
from app.services.store import JsonStore, RecordNotFound
from app.x402 import audit
from app.x402.api_keys import create_api_key, list_api_keys, revoke_api_key
from app.x402.crypto import build_text_preview, encrypt_text
from app.x402.gate import AccessOutcome, has_confirmed_payment, resolve_access
from app.x402.pricing import X402_VERSION
from app.x402.sponsor import parse_wallet_address
from app.x402.vault import VaultWallet

router = APIRouter(dependencies=[Depends(rate_limit_general)])
logger = logging.getLogger(__name__)


def _creator_response(record: Dict[str, Any]) -> CreatorResponse:
    return CreatorResponse(
        id=record["id"],
        walletAddress=record["wallet_address"],
        username=record.get("username"),
        createdAt=record.get("created_at"),
    )


def _api_key_response(record: Dict[str, Any]) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=record["id"],
        name=record["name"],
        keyPrefix=record["key_prefix"],
        isActive=record["is_active"],
        createdAt=record.get("created_at"),
        lastUsedAt=record.get("last_used_at"),
    )


def _content_response(record: Dict[str, Any]) -> ContentResponse:
    return ContentResponse(
        id=record["id"],
        creatorId=record["creator_id"],
        title=record["title"],
        description=record.get("description"),
        price=record["price"],
        assetType=record["asset_type"],
        creatorWalletAddress=record["creator_wallet_address"],
        preview=record.get("preview"),
        status=record["status"],
        createdAt=record.get("created_at"),
        updatedAt=record.get("updated_at"),
    )


def _get_owned_content(store: JsonStore, creator_id: str, content_id: str) -> Dict[str, Any]:
    record = store.get("content", content_id)
    if record is None or record["creator_id"] != creator_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Content '{content_id}' not found for creator '{creator_id}'."
        )
    return record


@router.post(
    "/creators",
    response_model=CreatorCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a Creator"
)
def create_creator(
    request: Request,
    request_body: CreatorCreateRequest,
    store: JsonStore = Depends(get_store)
) -> Any:
    """
    Registers a creator and their payout wallet.

    The response carries the creator's first API key. It is not stored in
    readable form and cannot be shown again.

    Raises:
        HTTPException: 400 for an invalid wallet, 409 if the wallet or username is taken
    """
    try:
        parse_wallet_address(request_body.walletAddress)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if store.find_one("creators", wallet_address=request_body.walletAddress):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A creator with this wallet address already exists."
        )
    if request_body.username and store.find_one("creators", username=request_body.username):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Username '{request_body.username}' is already taken."
        )

    creator_id = f"creator_{uuid.uuid4().hex[:12]}"
    record = store.create("creators", creator_id, {
        "id": creator_id,
        "wallet_address": request_body.walletAddress,
        "username": request_body.username,
    })
    issued = create_api_key(store, creator_id, "default")
    audit.log_api_key_event(audit.AuditEventType.API_KEY_CREATED, creator_id, issued.key_id, client_ip=get_client_ip(request))
    logger.info(f"Registered creator {creator_id} ({request_body.walletAddress[:8]}...)")

    return CreatorCreatedResponse(
        **_creator_response(record).model_dump(),
        apiKey=issued.api_key,
        apiKeyId=issued.key_id,
    )


@router.get(
    "/creators/{creator_id}",
    response_model=CreatorResponse,
    summary="Get Creator Details"
)
def get_creator(
    creator_id: str = Path(..., description="Creator id."),
    store: JsonStore = Depends(get_store)
) -> Any:
    record = store.get("creators", creator_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Creator not found")
    return _creator_response(record)


@router.post(
    "/creators/{creator_id}/api-keys",
    response_model=ApiKeyCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an API Key"
)
def create_creator_api_key(
    request: Request,
    request_body: ApiKeyCreateRequest,
    creator_id: str = Path(..., description="Creator id."),
    api_key: Dict[str, Any] = Depends(require_api_key),
    store: JsonStore = Depends(get_store)
) -> Any:
    """Issues an additional API key. Requires an existing key of the same creator."""
    authorize_creator(api_key, creator_id)
    issued = create_api_key(store, creator_id, request_body.name)
    audit.log_api_key_event(audit.AuditEventType.API_KEY_CREATED, creator_id, issued.key_id, client_ip=get_client_ip(request))
    return ApiKeyCreatedResponse(**_api_key_response(issued.record).model_dump(), apiKey=issued.api_key)


@router.get(
    "/creators/{creator_id}/api-keys",
    response_model=ApiKeyListResponse,
    summary="List API Keys"
)
def get_creator_api_keys(
    creator_id: str = Path(..., description="Creator id."),
    api_key: Dict[str, Any] = Depends(require_api_key),
    store: JsonStore = Depends(get_store)
) -> Any:
    """Lists a creator's keys, active and revoked. Secrets are never included."""
    authorize_creator(api_key, creator_id)
    return ApiKeyListResponse(apiKeys=[_api_key_response(r) for r in list_api_keys(store, creator_id)])


@router.delete(
    "/creators/{creator_id}/api-keys/{key_id}",
    response_model=ApiKeyResponse,
    summary="Revoke an API Key"
)
def delete_creator_api_key(
    request: Request,
    creator_id: str = Path(..., description="Creator id."),
    key_id: str = Path(..., description="Key id."),
    api_key: Dict[str, Any] = Depends(require_api_key),
    store: JsonStore = Depends(get_store)
) -> Any:
    authorize_creator(api_key, creator_id)
    try:
        record = revoke_api_key(store, key_id, creator_id)
    except RecordNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")

    audit.log_api_key_event(audit.AuditEventType.API_KEY_REVOKED, creator_id, key_id, client_ip=get_client_ip(request))
    return _api_key_response(record)


@router.post(
    "/content",
    response_model=ContentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Publish Content"
)
def create_content(
    request_body: ContentCreateRequest,
    api_key: Dict[str, Any] = Depends(require_api_key),
    store: JsonStore = Depends(get_store)
) -> Any:
    """
    Publishes a paywalled content item under the API key's creator.

    The pointer is encrypted with AES-256-GCM before storage. When no
    preview is supplied, one is built from previewText (first 500 characters).
    """
    authorize_creator(api_key, request_body.creatorId)
    creator = store.get("creators", request_body.creatorId)
    if creator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Creator not found")

    preview = request_body.preview
    if preview is None and request_body.previewText:
        preview = build_text_preview(request_body.previewText.encode("utf-8"))

    content_id = f"content_{uuid.uuid4().hex}"
    record = store.create("content", content_id, {
        "id": content_id,
        "creator_id": creator["id"],
        "title": request_body.title,
        "description": request_body.description,
        "price": request_body.price,
        "asset_type": request_body.assetType,
        "creator_wallet_address": creator["wallet_address"],
        "encrypted_pointer": encrypt_text(request_body.pointer),
        "preview": preview,
        "status": request_body.status,
    })
    logger.info(f"Published content {content_id} by {creator['id']} at {request_body.price} {request_body.assetType} units")
    return _content_response(record)


@router.get(
    "/content",
    response_model=ContentListResponse,
    summary="List Content"
)
def list_content(
    creator_id: Optional[str] = Query(None, alias="creatorId", description="Only content from this creator."),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: JsonStore = Depends(get_store)
) -> Any:
    filters = {"creator_id": creator_id} if creator_id else {"status": "active"}
    records = sorted(store.list("content", **filters), key=lambda r: r.get("created_at") or "")
    page = records[offset:offset + limit]
    return ContentListResponse(
        content=[_content_response(r) for r in page],
        total=len(records),
        limit=limit,
        offset=offset,
    )


@router.get(
    "/content/{creator_id}/{content_id}",
    response_model=ContentResponse,
    summary="Get Content Details"
)
def get_content(
    creator_id: str = Path(...),
    content_id: str = Path(...),
    store: JsonStore = Depends(get_store)
) -> Any:
    """Public details of a content item. The pointer is never included."""
    return _content_response(_get_owned_content(store, creator_id, content_id))


@router.patch(
    "/content/{creator_id}/{content_id}",
    response_model=ContentResponse,
    summary="Update Content"
)
def update_content(
    request_body: ContentUpdateRequest,
    creator_id: str = Path(...),
    content_id: str = Path(...),
    api_key: Dict[str, Any] = Depends(require_api_key),
    store: JsonStore = Depends(get_store)
) -> Any:
    """
    Updates a content item. Requires the owning creator's API key.

    Raises:
        HTTPException: 409 when changing the price after a confirmed sale
    """
    authorize_creator(api_key, creator_id)
    record = _get_owned_content(store, creator_id, content_id)
    changes = request_body.model_dump(exclude_none=True)

    if "price" in changes and changes["price"] != record["price"] and has_confirmed_payment(content_id, store):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Price cannot change after the first confirmed payment."
        )

    if not changes:
        return _content_response(record)

    updated = store.update("content", content_id, changes)
    logger.info(f"Updated content {content_id}: {sorted(changes)}")
    return _content_response(updated)


@router.get(
    "/content/{creator_id}/{content_id}/access",
    response_model=AccessGrantResponse,
    responses={
        402: {"description": "Payment required. Body carries the payment descriptor."},
        403: {"description": "Payment rejected (replayed signature or mismatched intent)."},
        503: {"description": "Ledger unavailable. Retry with the same payment."},
    },
    summary="Unlock Content"
)
def access_content(
    request: Request,
    creator_id: str = Path(...),
    content_id: str = Path(...),
    buyer: str = Query(..., description="Buyer wallet address."),
    token: Optional[str] = Query(None, description="Access token (alternative to X-ACCESS-TOKEN)."),
    signature: Optional[str] = Query(None, description="Payment signature (alternative to X-PAYMENT-SIGNATURE)."),
    payment_id: Optional[str] = Query(None, description="Payment intent id (alternative to X-PAYMENT-ID)."),
    x_access_token: Optional[str] = Header(None, alias="X-ACCESS-TOKEN"),
    x_payment_signature: Optional[str] = Header(None, alias="X-PAYMENT-SIGNATURE"),
    x_payment_id: Optional[str] = Header(None, alias="X-PAYMENT-ID"),
    store: JsonStore = Depends(get_store),
    ledger: SolanaRpcClient = Depends(get_ledger),
    vault: VaultWallet = Depends(get_vault)
) -> Any:
    """
    Returns the decrypted content pointer once access is established.

    Without a valid token or payment, responds 402 with a fresh payment
    descriptor. Pay the creator and platform legs in one transaction, then
    call again with the signature and the descriptor's paymentId.
    """
    record = _get_owned_content(store, creator_id, content_id)
    if record["status"] != "active":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Content is not available")

    try:
        parse_wallet_address(buyer)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        decision = resolve_access(
            record,
            buyer,
            store,
            ledger,
            vault,
            access_token=x_access_token or token,
            payment_signature=x_payment_signature or signature,
            payment_id=x_payment_id or payment_id,
            resource=str(request.url.path),
            client_ip=get_client_ip(request),
        )
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DecryptionError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Content could not be unlocked."
        )
    except Exception as e:
        logger.error(f"Unexpected error resolving access to {content_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while unlocking content."
        )

    if decision.outcome == AccessOutcome.GRANTED:
        return AccessGrantResponse(
            contentId=content_id,
            pointer=decision.pointer,
            token=decision.token.token if decision.token else None,
            tokenId=decision.token.token_id if decision.token else None,
            expiresAt=decision.token.expires_at if decision.token else None,
            via=decision.via,
        )

    if decision.outcome == AccessOutcome.PAYMENT_REQUIRED:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "x402Version": X402_VERSION,
                "error": "Payment Required",
                "reason": decision.reason,
                "paymentId": decision.payment_id,
                "accepts": [decision.descriptor],
            },
        )

    if decision.outcome == AccessOutcome.RETRYABLE:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "Ledger Unavailable",
                "reason": decision.reason,
                "paymentId": decision.payment_id,
                "retryable": True,
            },
            headers={"Retry-After": "5"},
        )

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)
