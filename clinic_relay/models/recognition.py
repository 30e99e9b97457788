"""
Pydantic models for speech recognition payloads and audio chunks
"""

import math
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WordInfo(BaseModel):
    """Single recognized word, optionally attributed to a speaker"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    word: str = Field(default="")
    speaker_tag: Optional[int] = Field(default=None, alias="speakerTag")

    @field_validator("word", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or ""

    @field_validator("speaker_tag", mode="before")
    @classmethod
    def _only_numeric_tags(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            return None
        return v


class Alternative(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transcript: Optional[str] = None
    words: List[WordInfo] = Field(default_factory=list)

    @field_validator("words", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v or []


class ResultSegment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    alternatives: List[Alternative] = Field(default_factory=list)

    @field_validator("alternatives", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v or []

    @property
    def top(self) -> Optional[Alternative]:
        return self.alternatives[0] if self.alternatives else None


class RecognitionResponse(BaseModel):
    """Response of one recognize call (or a finished long-running operation)"""
    model_config = ConfigDict(extra="ignore")

    results: List[ResultSegment] = Field(default_factory=list)

    @field_validator("results", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v if isinstance(v, list) else []


@dataclass(frozen=True)
class AudioChunk:
    """Normalized, time-bounded slice of a recording"""
    path: str
    start_offset_seconds: float
    duration_seconds: float
    index: int
