"""
Pydantic models for API requests and responses.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AnalyzeTextRequest(BaseModel):
    """Request body for text analysis."""
    text: Optional[str] = Field(None, description="Text to analyze")


class AnalysisResponse(BaseModel):
    """Response model for content analysis."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(default=True)
    analysis: Dict[str, Any] = Field(..., description="Normalized analysis record")
    proof_hash: str = Field(..., alias="proofHash", description="Fingerprint that will be published")


class PublishProofRequest(BaseModel):
    """Request body for proof publication."""

    model_config = ConfigDict(populate_by_name=True)

    proof_hash: Optional[str] = Field(None, alias="proofHash", description="0x-prefixed fingerprint")
    wallet_address: Optional[str] = Field(None, alias="walletAddress", description="Publishing wallet")


class PublishProofResponse(BaseModel):
    """Response model for proof publication."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(default=True)
    tx_hash: str = Field(..., alias="txHash", description="Registry transaction ID")
    proof_hash: str = Field(..., alias="proofHash")
    wallet_address: str = Field(..., alias="walletAddress")
    chain_id: int = Field(..., alias="chainId")
    timestamp: str = Field(..., description="Confirmation time (ISO-8601 UTC)")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(None, description="Error type")
    stage: Optional[str] = Field(None, description="Workflow stage that failed")
    hint: Optional[str] = Field(None, description="What to fix or retry")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    timestamp: str = Field(..., description="Current server time (ISO-8601 UTC)")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(default_factory=dict, description="Component status")
