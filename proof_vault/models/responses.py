"""
Pydantic models for API response bodies.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from proof_vault.models.proof import GenerationResult, Verdict


class GenerateResponse(BaseModel):
    """Response model for proof generation."""
    model_config = ConfigDict(protected_namespaces=())

    description: str = Field(..., description="AI generated description of the image")
    model: str = Field(..., description="Model that produced the description")
    timestamp: int = Field(..., description="Unix seconds when the proof was created")
    address: str = Field(..., description="Content address of the stored proof record")

    @classmethod
    def from_result(cls, result: GenerationResult) -> "GenerateResponse":
        return cls(
            description=result.description,
            model=result.model,
            timestamp=result.timestamp,
            address=result.address,
        )


class VerifyResponse(BaseModel):
    """Response model for proof verification.

    Fields that do not apply to an outcome are left out of the body.
    """
    model_config = ConfigDict(protected_namespaces=())

    valid: bool = Field(..., description="Whether a proof exists for the image")
    reason: Optional[str] = Field(None, description="no_proof_found or hash_mismatch")
    caveat: Optional[str] = Field(None, description="record_unavailable when the record could not be fetched")
    address: Optional[str] = Field(None, description="Content address from the local index")
    description: Optional[str] = None
    model: Optional[str] = None
    timestamp: Optional[int] = None

    @classmethod
    def from_verdict(cls, verdict: Verdict) -> "VerifyResponse":
        if verdict.confirmed:
            return cls(
                valid=True,
                address=verdict.address,
                description=verdict.record.description,
                model=verdict.record.model,
                timestamp=verdict.record.created_at,
            )
        if verdict.caveat:
            return cls(valid=True, caveat=verdict.caveat, address=verdict.address)
        return cls(valid=False, reason=verdict.reason)


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(..., description="Component health status")
