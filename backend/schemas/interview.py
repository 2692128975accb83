from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InterviewCreate(CamelModel):
    role: str = Field(..., min_length=1, max_length=255)
    focus_area: Optional[str] = None
    level: Optional[str] = None
    language: str = "English"
    total_questions: Optional[int] = Field(None, ge=1, le=30)
    jd: Optional[str] = None
    resume_text: Optional[str] = None
    interaction_id: Optional[str] = None


class InterviewUpdate(CamelModel):
    status: Optional[str] = None
    duration_seconds: Optional[float] = Field(None, ge=0)
    feedback: Optional[Dict[str, Any]] = None


class InterviewSummary(CamelModel):
    id: str
    role: str
    focus_area: Optional[str] = None
    level: Optional[str] = None
    language: str
    status: str
    total_questions: int
    question_count: int
    duration_seconds: float
    total_tokens: int
    estimated_cost: float
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InterviewDetail(InterviewSummary):
    jd: Optional[str] = None
    has_resume: bool = False
    feedback: Optional[Dict[str, Any]] = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    history: List[Dict[str, Any]] = []
    recordings: List[Dict[str, Any]] = []
    token_usage: Dict[str, Any] = {}
