"""
Pydantic Models for API Requests
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SttRequest(BaseModel):
    """Request body for POST /stt"""
    model_config = ConfigDict(populate_by_name=True)

    audio_base64: str = Field(
        alias="audioBase64",
        min_length=1,
        description="Base64 audio without a data URI prefix",
    )
    language_code: str = Field(
        default="en-US",
        alias="languageCode",
        min_length=1,
        description="BCP-47 language code passed to speech recognition",
    )


class SummaryRequest(BaseModel):
    """Request body for POST /summary"""
    model_config = ConfigDict(populate_by_name=True)

    transcription: str = Field(min_length=1, description="Full transcript text")
    elder_title: Optional[str] = Field(
        default=None,
        alias="elderTitle",
        description="How the listener is addressed in the spoken summary",
    )
