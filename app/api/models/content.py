# app/api/models/content.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal


class CreatorCreateRequest(BaseModel):
    """Request model for registering a creator."""
    walletAddress: str = Field(..., description="Base58 payout wallet of the creator.")
    username: Optional[str] = Field(None, description="Public handle.", max_length=64)


class CreatorResponse(BaseModel):
    id: str
    walletAddress: str
    username: Optional[str] = None
    createdAt: Optional[str] = None


class CreatorCreatedResponse(CreatorResponse):
    """Returned once on registration, with the creator's first API key."""
    apiKey: str = Field(..., description="Bearer key for publishing and editing content. Shown only once.")
    apiKeyId: str


class ApiKeyCreateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=64, description="Label to tell keys apart.")


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    keyPrefix: str = Field(..., description="First characters of the key, for identification.")
    isActive: bool
    createdAt: Optional[str] = None
    lastUsedAt: Optional[str] = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    apiKey: str = Field(..., description="The new key. Shown only once.")


class ApiKeyListResponse(BaseModel):
    apiKeys: List[ApiKeyResponse]


class ContentCreateRequest(BaseModel):
    """
    Request model for publishing a content item.

    The pointer (e.g. an IPFS CID) is encrypted before it is stored and is
    only ever returned to buyers with access.
    """
    creatorId: str = Field(..., description="Id of the publishing creator.")
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: int = Field(..., ge=0, description="Price in minor units (lamports or USDC base units).", example=1000000)
    assetType: Literal["SOL", "USDC"] = Field("SOL", description="Asset the price is denominated in.")
    pointer: str = Field(..., min_length=1, description="Content location (CID) to unlock after payment.")
    preview: Optional[str] = Field(None, description="Public teaser text. Generated from previewText if omitted.")
    previewText: Optional[str] = Field(None, description="Full text body to build a teaser from (first 500 characters).")
    status: Literal["draft", "active"] = "active"

    @field_validator("assetType", mode="before")
    @classmethod
    def upper_asset(cls, value):
        return value.upper() if isinstance(value, str) else value


class ContentUpdateRequest(BaseModel):
    """Partial update of a content item. price may only change before the first confirmed sale."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[int] = Field(None, ge=0)
    preview: Optional[str] = None
    status: Optional[Literal["draft", "active"]] = None


class ContentResponse(BaseModel):
    id: str
    creatorId: str
    title: str
    description: Optional[str] = None
    price: int
    assetType: str
    creatorWalletAddress: str
    preview: Optional[str] = None
    status: str
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class ContentListResponse(BaseModel):
    content: List[ContentResponse]
    total: int
    limit: int
    offset: int


class AccessGrantResponse(BaseModel):
    """Returned once access to a content item is established."""
    contentId: str
    pointer: str = Field(..., description="Decrypted content location.")
    token: Optional[str] = Field(None, description="New access token (absent when an existing token was presented).")
    tokenId: Optional[str] = None
    expiresAt: Optional[int] = Field(None, description="Token expiry (unix seconds).")
    via: str = Field(..., description="How access was established: token, payment or prior_payment.")
