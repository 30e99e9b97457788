"""
Structured visit summary returned by the generation service.

Fields the model leaves out (or sets to null) fall back to null / empty
lists so nothing is ever filled in on the model's behalf.
"""

from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


StringList = Annotated[List[str], BeforeValidator(lambda v: [] if v is None else v)]


def _empty_if_none(v):
    return {} if v is None else v


class Diagnosis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    condition: Optional[str] = Field(default=None, description="Condition named by the doctor, in plain words")
    reason: Optional[str] = Field(default=None, description="Cause mentioned by the doctor")


class DietAdvice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    good_to_eat: StringList = Field(default_factory=list)
    avoid_eating: StringList = Field(default_factory=list)


class FollowUp(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date_time: Optional[str] = Field(default=None, description="YYYY-MM-DD HH:MM")
    day_of_week: Optional[str] = None
    tasks: StringList = Field(default_factory=list)


class SummaryReport(BaseModel):
    """Elder-friendly visit report"""
    model_config = ConfigDict(extra="ignore")

    diagnosis: Annotated[Diagnosis, BeforeValidator(_empty_if_none)] = Field(default_factory=Diagnosis)
    prohibitions: StringList = Field(default_factory=list)
    danger_signs: StringList = Field(default_factory=list)
    diet_advice: Annotated[DietAdvice, BeforeValidator(_empty_if_none)] = Field(default_factory=DietAdvice)
    follow_up: Annotated[FollowUp, BeforeValidator(_empty_if_none)] = Field(default_factory=FollowUp)
    audio_summary: Optional[str] = None


_NULLABLE_STRING = {"type": "string", "nullable": True}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

# Schema handed to the generation service; mirrors SummaryReport.
SUMMARY_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "diagnosis": {
            "type": "object",
            "properties": {
                "condition": _NULLABLE_STRING,
                "reason": _NULLABLE_STRING,
            },
            "required": ["condition", "reason"],
        },
        "prohibitions": _STRING_LIST,
        "danger_signs": _STRING_LIST,
        "diet_advice": {
            "type": "object",
            "properties": {
                "good_to_eat": _STRING_LIST,
                "avoid_eating": _STRING_LIST,
            },
            "required": ["good_to_eat", "avoid_eating"],
        },
        "follow_up": {
            "type": "object",
            "properties": {
                "date_time": _NULLABLE_STRING,
                "day_of_week": _NULLABLE_STRING,
                "tasks": _STRING_LIST,
            },
            "required": ["date_time", "day_of_week", "tasks"],
        },
        "audio_summary": _NULLABLE_STRING,
    },
    "required": ["diagnosis", "prohibitions", "danger_signs", "diet_advice", "follow_up", "audio_summary"],
}
