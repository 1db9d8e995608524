"""
Security dashboard schemas.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class SecurityAssessment(BaseModel):
    score: int
    max_score: int = 100
    tier: Literal["low", "medium", "high", "critical"]
    recommendations: list[str]


class SecurityScoreResponse(BaseModel):
    assessment: SecurityAssessment
    last_verified_at: Optional[datetime] = None


class TrustedDeviceOut(BaseModel):
    device_id: str
    trusted_until: datetime
    first_seen_city: Optional[str] = None
    first_seen_country: Optional[str] = None


class TrustedDeviceListResponse(BaseModel):
    devices: list[TrustedDeviceOut]


class SecurityQuestionIn(BaseModel):
    question: str = Field(min_length=5, max_length=200)
    # bcrypt only reads the first 72 bytes
    answer: str = Field(min_length=2, max_length=72)

    @field_validator("question", "answer")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Must not be blank")
        return v


class SecurityQuestionsSetup(BaseModel):
    questions: list[SecurityQuestionIn] = Field(min_length=1, max_length=5)


class SecurityQuestionsResponse(BaseModel):
    questions: list[str]
