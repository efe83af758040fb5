# app/api/endpoints/payments.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import Any, Dict
import logging

from app.api.deps import get_store, get_vault, rate_limit_general
from app.api.models.payment import (
    FeeCalculationResponse,
    FeeInfoResponse,
    PaymentInstruction,
    PaymentInstructionListResponse,
    PaymentLinkRequest,
    PaymentLinkResponse,
)
from app.core.errors import PaymentValidationError
from app.services.store import JsonStore
from app.x402.gate import INTENT_EXPIRED, create_payment_intent, intent_is_expired
from app.x402.pricing import calculate_amounts, format_payment_instruction, get_fee_info, to_display_amount, validate_asset_type
from app.x402.sponsor import parse_wallet_address
from app.x402.vault import VaultWallet

router = APIRouter(dependencies=[Depends(rate_limit_general)])
logger = logging.getLogger(__name__)


def _payment_link_response(intent: Dict[str, Any]) -> PaymentLinkResponse:
    status_value = INTENT_EXPIRED if intent_is_expired(intent) else intent["status"]
    return PaymentLinkResponse(
        paymentId=intent["id"],
        contentId=intent["content_id"],
        buyer=intent["buyer"],
        amount=intent["amount"],
        assetType=intent["asset_type"],
        status=status_value,
        expiresAt=intent["expires_at"],
        platformFee=intent["platform_fee"],
        creatorAmount=intent["creator_amount"],
        signature=intent.get("signature"),
        confirmedAt=intent.get("confirmed_at"),
        createdAt=intent.get("created_at"),
    )


@router.get("/fees", response_model=FeeInfoResponse, summary="Platform Fee Information")
def get_fees() -> Any:
    """Returns the flat platform fee applied to every sale."""
    return FeeInfoResponse(**get_fee_info())


@router.get("/fees/calculate", response_model=FeeCalculationResponse, summary="Calculate Fee Split")
def calculate_fees(
    amount: int = Query(..., ge=0, description="Total price in minor units."),
    asset_type: str = Query("SOL", alias="assetType")
) -> Any:
    """
    Splits a price into the platform fee and the creator's share.

    Raises:
        HTTPException: 400 for an unsupported asset type
    """
    try:
        asset = validate_asset_type(asset_type)
        amounts = calculate_amounts(amount)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return FeeCalculationResponse(
        **amounts,
        assetType=asset,
        displayAmount=to_display_amount(amount, asset),
    )


@router.post(
    "/payment-links",
    response_model=PaymentLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a Payment Link"
)
def create_payment_link(
    request_body: PaymentLinkRequest,
    store: JsonStore = Depends(get_store),
    vault: VaultWallet = Depends(get_vault)
) -> Any:
    """
    Creates a pending payment intent for a content item ahead of the unlock call.

    The response carries the full x402 descriptor; present its paymentId
    together with the payment signature when unlocking.
    """
    try:
        parse_wallet_address(request_body.buyer)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    content = store.get("content", request_body.contentId)
    if content is None or content["status"] != "active":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Content not found")

    try:
        descriptor = create_payment_intent(content, request_body.buyer, store, vault)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    intent = store.get("payment_intents", descriptor["paymentId"])
    logger.info(f"Created payment link {intent['id']} for {content['id']}")
    response = _payment_link_response(intent)
    response.x402 = descriptor
    return response


@router.get(
    "/payment-links/{payment_id}",
    response_model=PaymentLinkResponse,
    summary="Get Payment Link Status"
)
def get_payment_link(
    payment_id: str = Path(...),
    store: JsonStore = Depends(get_store)
) -> Any:
    intent = store.get("payment_intents", payment_id)
    if intent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment link not found")
    return _payment_link_response(intent)


@router.get(
    "/x402/payment-instructions",
    response_model=PaymentInstructionListResponse,
    summary="List x402 Payment Instructions"
)
def list_payment_instructions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: JsonStore = Depends(get_store)
) -> Any:
    """Lists active content as x402 payment instructions."""
    records = sorted(store.list("content", status="active"), key=lambda r: r.get("created_at") or "")
    page = records[offset:offset + limit]
    next_offset = offset + limit if offset + limit < len(records) else None
    return PaymentInstructionListResponse(
        payment_instructions=[PaymentInstruction(**format_payment_instruction(r)) for r in page],
        total=len(records),
        next_offset=next_offset,
    )


@router.get(
    "/x402/payment-instructions/{content_id}",
    response_model=PaymentInstruction,
    summary="Get x402 Payment Instruction"
)
def get_payment_instruction(
    content_id: str = Path(...),
    store: JsonStore = Depends(get_store)
) -> Any:
    content = store.get("content", content_id)
    if content is None or content["status"] != "active":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment instruction not found")
    return PaymentInstruction(**format_payment_instruction(content))
