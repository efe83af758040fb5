# app/api/models/payment.py
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class FeeInfoResponse(BaseModel):
    platformFeePercentage: float
    platformFeeDisplay: str
    creatorKeepsPercentage: float
    creatorKeepsDisplay: str
    note: str


class FeeCalculationResponse(BaseModel):
    totalAmount: int
    platformFee: int
    creatorAmount: int
    platformFeePercentage: float
    creatorPercentage: float
    assetType: str
    displayAmount: str
    breakdown: Dict[str, Any]


class PaymentLinkRequest(BaseModel):
    """Request model for creating a payment intent for a content item."""
    contentId: str
    buyer: str = Field(..., description="Buyer wallet address the access token will be bound to.")


class PaymentLinkResponse(BaseModel):
    paymentId: str
    contentId: str
    buyer: str
    amount: int
    assetType: str
    status: str
    expiresAt: int
    platformFee: int
    creatorAmount: int
    signature: Optional[str] = None
    confirmedAt: Optional[str] = None
    createdAt: Optional[str] = None
    x402: Optional[Dict[str, Any]] = Field(None, description="Full payment descriptor (only on creation).")


class PaymentRequirement(BaseModel):
    asset: str
    pay_to: str
    network: str
    description: str
    max_amount_required: str


class PaymentInstruction(BaseModel):
    id: str
    version: int
    payment_requirements: List[PaymentRequirement]
    name: str
    description: str
    created_at: Optional[str] = None


class PaymentInstructionListResponse(BaseModel):
    payment_instructions: List[PaymentInstruction]
    total: int
    next_offset: Optional[int] = None
