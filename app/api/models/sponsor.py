# app/api/models/sponsor.py
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class EligibilityResponse(BaseModel):
    walletAddress: str
    eligible: bool
    status: str
    reason: Optional[str] = None
    sponsorshipAmount: Optional[int] = None
    suspicious: bool = False
    suspiciousPatterns: List[str] = []


class AccountMetaModel(BaseModel):
    pubkey: str
    isSigner: bool = False
    isWritable: bool = False


class InstructionModel(BaseModel):
    """One instruction in JSON form; data is base64."""
    programId: str
    keys: List[AccountMetaModel] = []
    data: str = ""


class BuildTransactionRequest(BaseModel):
    walletAddress: str
    instructions: List[InstructionModel] = Field(..., min_length=1)


class BuildTransactionResponse(BaseModel):
    transaction: str = Field(..., description="Base64 unsigned transaction with the vault as fee payer.")
    blockhash: str
    lastValidBlockHeight: Optional[int] = None
    feePayer: str
    message: str = "Transaction built. User must sign and submit."


class SubmitTransactionRequest(BaseModel):
    walletAddress: str
    signedTransaction: str = Field(..., description="Base64 transaction signed by the user.")


class SubmitTransactionResponse(BaseModel):
    signature: str
    amount: int
    confirmation: str


class SponsorStatsResponse(BaseModel):
    total_sponsored: int
    total_amount: int
    recent_sponsorships: List[Dict[str, Any]]


class VaultStatusResponse(BaseModel):
    ok: bool
    is_critical: bool
    balance_lamports: int
    balance_sol: float
    warn_lamports: int
    critical_lamports: int
    address: str
    warning: Optional[str] = None
