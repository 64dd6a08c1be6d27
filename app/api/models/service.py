# app/api/models/service.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List

from app.x402.compliance import ComplianceReport

WALLET_PATTERN = r"^0x[a-fA-F0-9]{40}$"
URL_PATTERN = r"^https?://.+"


class ServiceRegistrationRequest(BaseModel):
    """Request model for registering a third-party x402 service."""
    name: str = Field(..., min_length=1, max_length=200, description="Display name of the service.")
    url: str = Field(..., max_length=500, pattern=URL_PATTERN, description="HTTP(S) URL of the paid endpoint.")
    price: float = Field(..., ge=0, le=1000, description="Price per call in USDC (e.g. 0.10).")
    ownerAddress: str = Field(..., pattern=WALLET_PATTERN, description="Wallet address of the service owner.")
    description: Optional[str] = Field("", max_length=1000)
    tags: List[str] = Field(default_factory=list, max_length=10)

    @field_validator("name", "url", "description")
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        if any(len(tag) > 50 for tag in v):
            raise ValueError("tags must be at most 50 characters each")
        return v


class ServiceRegistrationResponse(BaseModel):
    """Response model for a registration, with the compliance audit of its URL."""
    success: bool = True
    message: str
    service: ServiceRegistrationRequest
    tx_hash: Optional[str] = None
    verification: ComplianceReport
