"""
Pydantic Models for API Responses
"""

from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field

from clinic_relay.models.summary import SummaryReport


class SttResponse(BaseModel):
    """Reconciled transcript of one recording"""
    model_config = ConfigDict(populate_by_name=True)

    transcription: str = Field(description="Speaker-annotated transcript")
    chunks_processed: int = Field(alias="chunksProcessed", description="Number of recognition chunks")
    raw: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Raw recognition responses, one per chunk in order",
    )


class SummaryResponse(BaseModel):
    """Structured summary of one transcript"""
    current_date: str = Field(description="Anchor date (YYYY-MM-DD) used for relative follow-up dates")
    model: str = Field(description="Generation model identifier")
    summary: SummaryReport


class HealthCheckResponse(BaseModel):
    ok: bool = True
    version: Optional[str] = None


class ErrorDetail(BaseModel):
    message: str
    type: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error body"""
    error: ErrorDetail
    rawText: Optional[str] = Field(default=None, description="Excerpt of unparseable generation output")
