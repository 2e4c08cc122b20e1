from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from skillport.models import Verdict


class ParticipantRegister(BaseModel):
    user_id: str = Field(min_length=1)
    user_name: str = Field(min_length=1, max_length=200)


class ParticipantOut(BaseModel):
    contest_id: str
    user_id: str
    user_name: str
    score: float
    rank: Optional[int] = None
    joined_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubmissionCreate(BaseModel):
    user_id: str = Field(min_length=1)
    problem_id: str = Field(min_length=1)
    verdict: str = Field(default=Verdict.PENDING, pattern="^(PENDING|ACCEPTED|REJECTED)$")
    score: float = Field(default=0.0, ge=0)
    language: Optional[str] = None
    execution_time_ms: Optional[int] = Field(default=None, ge=0)


class SubmissionVerdictUpdate(BaseModel):
    verdict: str = Field(pattern="^(ACCEPTED|REJECTED)$")
    score: float = Field(default=0.0, ge=0)
    execution_time_ms: Optional[int] = Field(default=None, ge=0)


class SubmissionOut(BaseModel):
    id: str
    user_id: str
    problem_id: str
    contest_id: Optional[str] = None
    verdict: str
    score: float
    language: Optional[str] = None
    execution_time_ms: Optional[int] = None
    submitted_at: datetime

    model_config = ConfigDict(from_attributes=True)
