"""
Pydantic request/response schemas for the KYB Compliance Gate API

JSON field names are camelCase on the wire; Python attributes are snake_case.
Wallet addresses are validated by the compliance core, not here, so every
endpoint reports a malformed address the same way.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubmitRequest(BaseModel):
    """Request schema for a KYB submission."""
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: Optional[str] = Field(
        default=None,
        alias="walletAddress",
        max_length=64,
        description="Institution wallet (0x-prefixed, 40 hex characters)"
    )
    legal_name: Optional[str] = Field(
        default=None,
        alias="legalName",
        max_length=500,
        description="Registered legal name, used for sanctions screening"
    )
    jurisdiction: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Country of registration"
    )
    contact_email: Optional[str] = Field(
        default=None,
        alias="contactEmail",
        max_length=320,
        description="Compliance contact"
    )

    @field_validator('legal_name', 'jurisdiction', 'contact_email')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat whitespace-only strings as absent."""
        if v is None:
            return v
        v = v.strip()
        return v or None


class TokenResponse(BaseModel):
    """Verification SDK token."""
    token: str = Field(..., description="Access token for the verification SDK")
    demo: bool = Field(..., description="True when no real verification provider is configured")


class ApprovalResponse(BaseModel):
    """Result of an approval; ``error`` is present when the on-chain write failed."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    wallet: str
    kyb_status: str = Field(..., alias="kybStatus")
    on_chain_verified: bool = Field(..., alias="onChainVerified")
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    saga: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class GrantBuyerRoleResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    wallet: str
    tx_hash: Optional[str] = Field(default=None, alias="txHash")


class SweepResponse(BaseModel):
    """Rescreening sweep summary; ``errors`` is omitted when empty."""
    model_config = ConfigDict(populate_by_name=True)

    screened: int = Field(..., ge=0, description="Institutions selected for rescreening")
    revoked: int = Field(..., ge=0, description="Institutions suspended by a sanctions hit")
    errors: Optional[List[str]] = None
    skipped_unnamed: int = Field(default=0, ge=0, alias="skippedUnnamed")
    reconciled: int = Field(default=0, ge=0, description="Pending revokes completed")


class WebhookAck(BaseModel):
    ok: bool = True


class RegistryHealth(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool
    reachable: bool
    checked_at: Optional[str] = Field(default=None, alias="checkedAt")


class HealthResponse(BaseModel):
    """Response schema for health check."""
    status: str = Field(..., description="healthy or degraded")
    database: bool = Field(..., description="Database reachable")
    registry: RegistryHealth
    demo: Dict[str, bool] = Field(
        default_factory=dict,
        description="Which providers run in demo mode"
    )
    version: str


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
